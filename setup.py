"""
HealthCore Bridges
Transport bridges for a smart-building gateway
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="healthcore-bridges",
    version="1.0.0",
    description="Bluetooth LE, Zigbee, LoRa and webhook bridges for an MQTT coordinated smart-building gateway",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Home Automation",
        "Topic :: System :: Networking",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiomqtt>=2.0.0",
        "bleak>=0.21.0",
        "zigpy>=0.60.0",
        "zigpy-znp>=0.12.0",
        "bellows>=0.38.0",
        "pyserial>=3.5",
        "pyserial-asyncio>=0.6",
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
            "healthcore=healthcore.cli:main",
        ],
    },
)
