"""
Traffic Arb - CPA offer rewards with fraud scoring and referral ledger
"""

from setuptools import setup, find_namespace_packages

setup(
    name="traffic-arb",
    version="1.0.0",
    description="CPA offer platform: fraud risk scoring and multi-tier referral ledger",
    author="Bashirov",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["shared*", "arb_api*", "worker*"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "python-telegram-bot>=20.7",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.1",
        "aiohttp>=3.9.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "traffic-arb-api=arb_api.main:main",
            "traffic-arb-worker=worker.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
    ],
)
