"""
VaultIngest: setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run the tests:
    python3 -m unittest discover -s tests
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "vault-ingest"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Short-form video ingestion client for a personal knowledge vault",
    packages=find_namespace_packages(include=["vault_ingest*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "vault-ingest=main:main",
        ],
    },
)
