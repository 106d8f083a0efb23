"""
Setup script for Enforcement Orchestrator

The enforcement-execution core of a music-library blocking system: idempotent,
rate-limited, checkpointed and reversible execution of planned library actions
against provider APIs.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Enforcement Orchestrator

    Applies planned library actions (remove liked songs, unfollow artists,
    strip playlist tracks) against rate-limited provider APIs with idempotent
    execution, circuit breaking, checkpointed resume, rollback and a durable
    job queue.
    """

setup(
    name="enforcement-orchestrator",
    version="1.0.0",
    description="Idempotent, rate-limited and reversible execution of music-library enforcement plans",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Enforcement Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="enforcement, rate limiting, circuit breaker, job queue, rollback, async",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "psutil>=5.8.0",

        # Additional async and networking
        "aiofiles>=23.1.0",
        "httpx>=0.24.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "enforcement-orchestrator=enforcement_orchestrator.cli.main:main",
            "eo=enforcement_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "enforcement_orchestrator": [
            "sql/*.sql",
        ],
    },
)
