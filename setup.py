"""Setup script for the omnitrack negotiation engine."""

from setuptools import setup, find_packages

setup(
    name="omnitrack-negotiation",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.6",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "tenacity>=8.2",
        "prometheus-client>=0.19",
        "fastapi>=0.110",
        "httpx>=0.26",
        "asyncpg>=0.29",
        "uvicorn>=0.27",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="OmniTrack - Multi-Agent Orchestration & Negotiation Engine",
    author="OmniTrack Team",
)
