"""Setup script for Enrollment Checkout."""

from setuptools import setup, find_packages

setup(
    name="enrollment-checkout",
    version="0.1.0",
    description="Order, checkout and payment lifecycle for program enrollments",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["enrollment_checkout", "enrollment_checkout.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
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
            "enrollment-checkout-api=enrollment_checkout.api.main:run",
            "enrollment-checkout-expiry=enrollment_checkout.workers.expiry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
