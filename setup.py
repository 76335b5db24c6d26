#!/usr/bin/env python3
"""
Setup script for the speedbot package.
Supports editable installation for development.
"""

from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="speedbot",
    version="1.0.0",
    description="Twitch speedrun stream shoutouts and speedrun.com run announcements for Discord",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="speedbot contributors",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9.0",
        "asyncpg>=0.29.0",
        "pydantic>=2.5.0",
        "python-dotenv>=1.0.0",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.12.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "speedbot=speedbot.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Topic :: Communications :: Chat",
    ],
    keywords="twitch discord speedrun shoutout bot",
)
