from setuptools import setup, find_packages

setup(
    name="workflow-engine",
    version="0.1.0",
    description="In-process engine for declarative agent, tool and approval workflows",
    author="MCP Team",
    packages=find_packages(exclude=["*.tests", "*.tests.*"]),
    install_requires=[
        "pydantic>=2.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    python_requires=">=3.8",
)
