from __future__ import annotations

from setuptools import find_packages, setup

setup(
    name="pymashcore",
    version="0.1.0",
    description="Posterior engine for multivariate adaptive shrinkage under normal mixture priors",
    python_requires=">=3.9",
    packages=find_packages(include=["pymashcore", "pymashcore.*"]),
    install_requires=[
        "numpy>=1.22",
        "scipy>=1.8",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
)
