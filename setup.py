#!/usr/bin/env python3
"""
kvsync Setup Script
===================
Allows installation of the kvsync package.

Usage:
    pip install -e .           # Development install
    pip install -e ".[test]"   # Development install with test tools
    pip install .              # Regular install
"""

from setuptools import setup, find_packages

setup(
    name="kvsync",
    version="1.0.0",
    description="Distributed locks, caching, rate limiting, pub/sub and cron jobs over Redis",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "fakeredis[lua]>=2.20",
        ],
    },
    entry_points={
        "console_scripts": [
            "kvsync-cron=kvsync.worker:main",
        ],
    },
)
