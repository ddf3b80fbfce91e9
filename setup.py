"""
statedocs setup.py — Package configuration.
"""

from setuptools import find_packages, setup

setup(
    name="statedocs",
    version="0.1.0",
    description="statedocs — Multi-state document management core",
    packages=find_packages(exclude=["tests*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
