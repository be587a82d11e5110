from setuptools import setup, find_packages

# Open README.md with UTF-8 encoding to avoid decoding issues
with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="gscsynth",
    version="0.1.0",
    description="Generalized Synthetic Control estimation for continuous treatments in panel data.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["gscsynth", "gscsynth.*"]),
    include_package_data=True,
    install_requires=[
        "pandas",
        "numpy",
        "matplotlib",
        "scipy",
        "statsmodels",
        "cvxpy",
        "pydantic>=2"
    ],
    extras_require={
        "test": ["pytest"],
    },
    classifiers=[  # Metadata about the package
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",  # Specify Python version compatibility
)
