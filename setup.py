#!/usr/bin/env python
from setuptools import find_packages
from setuptools import setup

setup(
    name="laser-compartments",
    version="0.1.0",
    license="MIT",
    description="Residence-time compartment models: multi-stage population flow in discrete time.",
    url="https://github.com/InstituteforDiseaseModeling/laser",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    include_package_data=True,
    zip_safe=False,
    python_requires=">=3.9",
    install_requires=[
        "click",
        "numba",
        "numpy",
        "scipy",
        "tqdm",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "laser-compartments = laser_compartments.cli:main",
        ]
    },
)
