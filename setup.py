"""Setup script for lab-audit package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="lab-audit",
    version="1.0.0",
    description="Laboratory workflow audit - timelines, analytics and incidents rebuilt from the audit log",
    author="Lab Audit Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["lab_audit*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2",
        "psycopg2-binary",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
