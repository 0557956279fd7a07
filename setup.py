#!/usr/bin/env python
"""
cgov - Linux control group resource governor for a long-lived server process
"""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Define required packages
required_packages = [
    "pydantic>=2.0.0",  # For settings validation
    "psutil>=5.9.0",    # For naming member processes in status output
    "pyyaml>=6.0",      # For configuration file support
    "tabulate>=0.9.0",  # For formatted table output
]

setup(
    name="cgov",
    version="0.9.1",
    description="Per-instance cgroup resource governor: memory, swap, CPU, block I/O and cpuset limits",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=required_packages,
    entry_points={
        'console_scripts': [
            'cgov=cgov.cli:main',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
)
