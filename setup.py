from setuptools import setup, find_packages

setup(
    name="hostbridge",
    version="0.1.0",
    packages=find_packages(include=["bridge", "bridge.*"]),
    python_requires=">=3.12",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "uvicorn>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    entry_points={
        "console_scripts": [
            "hostbridge=bridge.__main__:main",
        ],
    },
)
