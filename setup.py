#!/usr/bin/env python
"""flipagent: MCP client registry and stdio tool server for FlipAgent."""

from setuptools import find_packages, setup

VERSION = "0.1.0"
CLASSIFIERS = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "License :: OSI Approved :: MIT License",
]

DEPENDENCIES = [
    "knack>=0.11.0",
    "pyyaml>=6.0",
    "rich>=13.0.0",
    # Used to kill the whole process tree of a server launched via npx/uvx.
    "psutil>=5.6.3",
    # Tool input schema validation on the inbound tools/call path.
    "jsonschema>=4.0",
]

TEST_DEPENDENCIES = [
    "pytest>=7.0",
]

setup(
    name="flipagent",
    version=VERSION,
    description="MCP client registry and stdio tool server for the FlipAgent e-commerce agent",
    long_description="Drives external Model Context Protocol servers and exposes FlipAgent skills over MCP.",
    license="MIT",
    author="FlipAgent",
    author_email="",
    classifiers=CLASSIFIERS,
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=DEPENDENCIES,
    extras_require={"test": TEST_DEPENDENCIES},
    package_data={
        "flipagent": [
            "skills/*/SKILL.md",
        ]
    },
    entry_points={
        "console_scripts": [
            "flipagent=flipagent.__main__:main",
        ]
    },
)
