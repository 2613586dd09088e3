from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

# Read README for long description
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    # Package metadata
    name="subwatch",
    version="0.3.0",
    description="Subscription detection from billing receipt emails using AI and rules",
    long_description=long_description,
    long_description_content_type="text/markdown",
    # Package discovery
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"subwatch": ["data/merchants.yaml"]},
    # Dependencies
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn>=0.24.0",
        "pydantic>=2.5.0",
        "google-cloud-aiplatform>=1.38.0",
        "python-dotenv>=1.0.0",
        "requests>=2.31.0",
        "tenacity>=8.2.0",
        "cachetools>=5.3.0",
        "pyyaml>=6.0",
    ],
    # Optional dependencies (for development)
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "httpx>=0.25.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "httpx>=0.25.0",
            "mypy>=1.0.0",
            "ruff>=0.1.0",
        ],
    },
    # CLI commands
    entry_points={
        "console_scripts": [
            "subwatch-api=subwatch.api:main",
        ],
    },
    # Python version requirement
    python_requires=">=3.11",
    # PyPI classifiers
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
