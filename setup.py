"""Setup script for the storefront payments service."""

from setuptools import setup, find_packages

setup(
    name="storefront-payments",
    version="1.0.0",
    description="Checkout, payment gateway reconciliation and order fulfillment for a subscription storefront",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["storefront", "storefront.*"]),
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn[standard]>=0.27.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "sqlalchemy[asyncio]>=2.0.25",
        "asyncpg>=0.29.0",
        "aiosqlite>=0.19.0",
        "alembic>=1.13.0",
        "structlog>=24.1.0",
        "python-json-logger>=2.0.7",
        "redis>=5.0.1",
        "stripe>=8.0.0",
        "tenacity>=8.2.3",
        "prometheus-client>=0.19.0",
        "httpx>=0.27.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "storefront-api=storefront.api.main:run",
            "storefront-status-poller=storefront.workers.status_poller:main",
            "storefront-provisioning-sweep=storefront.workers.provisioning_sweep:main",
            "storefront-outbox-publisher=storefront.workers.outbox_publisher:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
