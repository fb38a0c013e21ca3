#!/usr/bin/env python
"""toolexec: tool-call execution core for agentic coding assistants."""

from setuptools import find_packages, setup

VERSION = "0.1.0"
CLASSIFIERS = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "License :: OSI Approved :: MIT License",
]

DEPENDENCIES = [
    "knack>=0.11.0",
    "pyyaml>=6.0",
    "requests>=2.28.0",
    "rich>=13.0.0",
    # prompt_toolkit for the interactive approval prompt
    "prompt_toolkit>=3.0.0",
    # psutil kills whole process trees (execute_bash, stdio MCP servers)
    "psutil>=5.6.3",
    # WebSocket MCP transport
    "websocket-client>=1.6.0",
]

setup(
    name="toolexec",
    version=VERSION,
    description="Tool-call extraction, approval gating, MCP connections and batch execution for coding agents",
    long_description="Turns model output into verified, approved, executed tool calls across built-in and MCP tools.",
    license="MIT",
    author="",
    author_email="",
    classifiers=CLASSIFIERS,
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=DEPENDENCIES,
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
