"""Setup script for the Payment Orchestrator."""

from setuptools import setup, find_packages

setup(
    name="payment_orchestrator",
    version="1.0.0",
    description="Payment orchestration for Zarinpal and IDPay with exactly-once settlement",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["payment_orchestrator", "payment_orchestrator.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
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
            "payment-orchestrator-api=payment_orchestrator.api.main:main",
            "payment-orchestrator-outbox=payment_orchestrator.workers.outbox_publisher:main",
            "payment-orchestrator-sweeper=payment_orchestrator.workers.payment_sweeper:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
