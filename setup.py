#!/usr/bin/env python3
"""
Setup script for component-analytics.
Installs the analytics pipeline package and its command line entry point.
"""

from setuptools import setup, find_packages

setup(
    name="component-analytics",
    version="1.0.0",
    description="Telemetry ingestion, rollups, error grouping and alerting for installable components",
    python_requires=">=3.10",
    packages=find_packages(include=["component_analytics", "component_analytics.*"]),
    install_requires=[
        "pydantic>=2.0",
        "asyncpg>=0.29",
        "fastapi>=0.100",
        "httpx>=0.25",
        "PyYAML>=6.0",
        "uvicorn>=0.23",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "component-analytics=component_analytics.cli:main",
        ],
    },
)
