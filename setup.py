import setuptools

try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = "Dispatch jobs to heartbeat-tracked edge nodes"

setuptools.setup(
    name="edge-dispatch",
    version="0.1.0",
    description="Dispatch jobs to heartbeat-tracked edge nodes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=setuptools.find_packages(where="src", include=["edgedispatch", "edgedispatch.*"]),
    install_requires=[
        "fastapi",
        "httpx",
        "pydantic>=2",
        "python-dotenv",
        "rich",
        "typer",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "edgedispatch=edgedispatch.cli.main:app",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
