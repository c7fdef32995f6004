#!/usr/bin/env python3
from setuptools import setup, find_packages

setup(
    name="edgeflow",
    version="0.1.0",
    description="Edge-based, vertex-centered finite-volume flow solver core",
    author="edgeflow developers",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.12",
        "matplotlib>=3.4.0",
        "PyYAML>=5.4",
    ],
    extras_require={
        "mpi": ["mpi4py>=3.1.0"],
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "edgeflow=edgeflow.cli.app:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Physics",
    ],
)
