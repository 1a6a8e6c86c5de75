"""
Setup script for medrev-engine.

medrev is the adaptive revision engine behind clinical case and UKMLA
practice. It serves three roles:

1. Review Scheduler - SM-2 spacing for every case and question attempted
2. Revision Notes - Personalised, cached notes per weak topic cluster
3. Analytics - Per-domain and per-difficulty performance breakdowns

The 'medrev' command exposes the engine for operators and local study.
"""

from setuptools import find_packages, setup

setup(
    name="medrev-engine",
    version="1.0.0",
    description="Adaptive review scheduling and personalised revision notes for medical exam practice",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # AI
        "google-generativeai>=0.5.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "medrev=medrev.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="spaced-repetition sm2 medical-education revision ukmla",
)
