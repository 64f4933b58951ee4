from setuptools import setup, find_packages

setup(
    name="project_kb",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "tqdm>=4.60",
    ],
    extras_require={
        # Remote OpenAI-compatible embedding backend
        "semantic": [
            "openai>=1.0",
        ],
        # Local in-process embedding model
        "local": [
            "sentence-transformers",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "project-kb=project_kb.kb.cli:main",
        ],
    },
    description="Project knowledge-base indexer with content-hash caching and semantic search.",
)
