"""Setup script for the dbpool package."""

import re
from setuptools import setup, find_packages

# Read the long description from README.md
with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

# Read requirements from requirements.txt
with open("requirements.txt") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]

# Extract version from the package to ensure consistency
def get_version():
    with open("dbpool/__init__.py", encoding="utf-8") as f:
        content = f.read()
    version_match = re.search(r'__version__ = "([^"]+)"', content)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version in dbpool/__init__.py")

setup(
    name="dbpool",
    version=get_version(),
    description="Asynchronous database connection pool with validation, eviction and abandoned-connection reclamation",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="dbpool Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=requirements,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Database",
        "Framework :: AsyncIO",
    ],
    python_requires=">=3.9",
    keywords="database, connection pool, asyncio",
    extras_require={
        "dev": [
            "pytest>=7.3.1",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "flake8>=6.1.0",
            "black>=23.7.0",
            "isort>=5.12.0",
            "mypy>=1.5.1"
        ],
    },
)
