"""Setup for Playground Gateway Python SDK"""

from setuptools import setup, find_namespace_packages

setup(
    name="playground-gateway-sdk",
    version="0.1.0",
    description="Python SDK for the Playground Gateway quota and webhook APIs",
    author="Playground Gateway Team",
    packages=find_namespace_packages(include=["playground_sdk*"]),
    install_requires=[
        "httpx>=0.25.2",
    ],
    python_requires=">=3.11",
)
