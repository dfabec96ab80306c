"""
Agent Reach - presence and discovery for autonomous agents
Service cards, heartbeats and encrypted DMs over Nostr relays
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="agent-reach",
    version="0.1.0",
    description="Presence, discovery and direct messaging for AI agents over Nostr",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Communications",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.9.0",
        "cryptography>=41.0.0",
        "coincurve>=18.0.0",  # BIP-340 Schnorr signatures
        "bech32>=1.2.0",  # npub/nsec encoding
        "fastapi>=0.109.0",
        "uvicorn>=0.25.0",
        "click>=8.0.0",
        "rich>=13.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.26.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agent-reach=agent_reach.cli:main",
        ],
    },
)
