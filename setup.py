from setuptools import setup, find_packages

setup(
    name="tpc_reco",
    version="0.1.0",
    description="TPC direct-laser residual accumulation and secondary-vertex pair finding",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["tpc_reco", "tpc_reco.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for tpc_reco/main.py
            "tpc-reco=tpc_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
