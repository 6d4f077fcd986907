from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="gatehouse",
    version="0.1.0",
    description="Multi-tenant identity, RBAC and tenant resolution service",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["gatehouse", "gatehouse.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",
        "pydantic[email]>=2.5.0",
        "pydantic-settings>=2.1.0",
        "sqlalchemy>=2.0.23",
        "psycopg2-binary>=2.9.9",
        "redis>=5.0.1",
        "structlog>=23.2.0",
        "httpx>=0.25.2",
        "cryptography>=43.0.1",
        "python-jose[cryptography]>=3.3.0",
        "bcrypt>=4.1.2",
        "pyotp>=2.9.0",
        "qrcode[pil]>=7.4.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
        ],
    },
)
