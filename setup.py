#!/usr/bin/env python3
"""
Setup script for Pool Keeper
"""

from setuptools import setup

setup(
    name="pool-keeper",
    version="1.0.0",
    description="Autonomous keeper agent for rotating-savings pools",
    author="Pool Keeper Developers",
    py_modules=[
        "backoff_executor",
        "chain_gateway",
        "checkpoint_tracker",
        "condition_evaluator",
        "config_manager",
        "decision_engine",
        "dedup_ledger",
        "event_scanner",
        "logger_utils",
        "notifier",
        "pool_keeper",
        "pool_registry",
        "pool_types",
        "rpc_failover",
        "web3_gateway",
    ],
    package_dir={"": "src"},
    install_requires=[
        "web3>=6.20.0,<7.0.0",
        "eth-account>=0.8.0,<0.13.0",
        "requests>=2.28.0",
        "python-dotenv>=1.0.0",
        "pytz>=2023.3",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "poolkeeper=pool_keeper:main",
        ],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
