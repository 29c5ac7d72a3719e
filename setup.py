from setuptools import setup, find_packages

setup(
    name="project-memory",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.22",
        "tqdm>=4.60",
    ],
    extras_require={
        # OpenAI-compatible embedding endpoints (install separately when needed)
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7",
        ],
    },
    entry_points={
        "console_scripts": [
            "project-memory=project_memory.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Project-scoped decision, progress and code pattern memory "
                "with hybrid keyword and vector retrieval.",
)
