#!/usr/bin/env python
"""Setup script for the AuraDB deployment orchestrator."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

setup(
    name="aura-deploy",
    version="0.1.0",
    author="AuraDB Project",
    description="Cross-platform build, packaging and service deployment for AuraDB",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where=".", include=["aura_deploy*", "config"]),
    package_dir={"": "."},
    python_requires=">=3.11",
    install_requires=[
        # Configuration and manifests
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "pyyaml>=6.0.0",

        # Result pattern
        "returns>=0.22.0",
        "typing-extensions>=4.7.0",

        # Logging and console output
        "structlog>=23.0.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.11.0",
            "pytest-timeout>=2.1.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "isort>=5.12.0",
        ],
        "test": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.11.0",
            "pytest-timeout>=2.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "aura-deploy=aura_deploy.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: MacOS",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Installation/Setup",
        "Topic :: System :: Software Distribution",
    ],
    keywords="deployment packaging systemd launchd winsw deb msi pkg",
)
