from setuptools import setup, find_packages

setup(
    name="keepwarm",
    version="0.1.0",
    description="Keep an expensive command running in a daemon and attach to it from short-lived invocations",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "typer>=0.12.0",
        "rich>=13.0.0",
        "prompt_toolkit>=3.0.36",
        "psutil>=5.9.0",
        "setproctitle>=1.3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "keepwarm=keepwarm.main:keepwarm",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
