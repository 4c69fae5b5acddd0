"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="marketplace-chat",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "structlog",
        "httpx",
        "prometheus-client",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "fastapi",
        ],
    },
)
