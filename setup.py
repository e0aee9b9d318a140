"""Setup script for the Synergy orchestration core."""

from setuptools import setup, find_packages

setup(
    name="synergy-core",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "tenacity>=8.2",
        "prometheus-client>=0.19",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Synergy - multi-agent task orchestration and governance core",
    author="Synergy Team",
)
