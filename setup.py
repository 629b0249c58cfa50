"""
Setup script for the Trading Agent core.
"""

from setuptools import setup, find_packages
from pathlib import Path

here = Path(__file__).parent

# Read the README file
long_description = (here / "README.md").read_text(encoding="utf-8")

# Read requirements
with open(here / "requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

# Version
VERSION = "1.0.0"

setup(
    name="trading-agent-core",
    version=VERSION,
    author="Trading Agent Team",
    description="Automated multi-strategy trading agent: consensus signals, risk validation, "
                "guarded execution and outcome-driven learning",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Topic :: Office/Business :: Financial :: Investment",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
        "Environment :: Console",
        "Framework :: AsyncIO",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "trading-agent=trading_agent.cli:main",
        ],
    },
    include_package_data=True,
    package_data={
        "trading_agent": [
            "configs/*.yaml",
        ],
    },
    zip_safe=False,
    keywords="trading, algorithmic, finance, multi-strategy, risk-management, asyncio",
)
