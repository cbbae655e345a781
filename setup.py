from setuptools import setup, find_packages

setup(
    name="agent-worker",
    version="0.1.0",
    description="Long-lived AI agent daemons with tool approvals and shared workflow context",
    author="phisanti",
    author_email="tisalon@outlook.com",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "langchain-core>=0.3.0",
        "langchain-community>=0.3.20",
        "langchain-mistralai>=0.2.9",
        "langchain-google-genai>=2.1.1",
        "python-dotenv>=1.0.0",
        "typer>=0.12.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agent-worker=agentworker.main:agent_worker",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
