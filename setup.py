#!/usr/bin/env python
"""Setup configuration for Clinical Store."""

from setuptools import find_packages, setup

setup(
    name="clinical-store",
    version="0.1.0",
    description="Versioned FHIR resource storage with search-parameter compilation",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.0.0",
        "structlog>=23.2.0",
        "pymongo>=4.13",
        "python-dateutil>=2.8.2",
        "jsonpatch>=1.33",
        "jsonpointer>=2.4",
        "fhirclient>=4.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "mongomock-motor>=0.0.29",
        ],
    },
)
