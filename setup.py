"""Setup configuration for hubrelay."""

from setuptools import setup, find_packages

setup(
    name="hubrelay",
    version="1.0.0",
    description="Resilient submit/poll/fetch client for long-running image-transform jobs",
    author="Your Name",
    packages=find_packages(include=["hubrelay", "hubrelay.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "httpx>=0.25",
        "loguru>=0.7",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "hubrelay=hubrelay.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
