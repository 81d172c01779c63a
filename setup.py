from setuptools import setup, find_packages

setup(
    name="sessionq",
    version="0.1.0",
    description="Query and streaming engine for append-only conversation logs",
    author="Your Name",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "click>=8.1.0",
        "pyyaml>=6.0",
        "pandas>=2.0.0",
        "rich>=13.0.0",
        "jq>=1.6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "sessionq=sessionq.cli.main:main",
        ],
    },
    python_requires=">=3.9",
)
