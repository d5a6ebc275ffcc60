# setup.py
from setuptools import setup, find_packages

setup(
    name="domain_audit",
    version="0.1.0",
    description="Async single-domain crawler with transport telemetry for site audits",
    packages=find_packages(include=["domain_audit", "domain_audit.*"]),
    install_requires=[
        "aiohttp>=3.9",
        "beautifulsoup4>=4.12",
        "pydantic>=2.5",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    python_requires=">=3.11",
)
