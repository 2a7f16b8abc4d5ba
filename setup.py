"""Build swarmlink package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="swarmlink",
    version="0.1.0",
    description="Peer discovery and WebRTC sessions over WebTorrent trackers",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["swarmlink", "swarmlink.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: AsyncIO",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.6.0",
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-asyncio>=0.23.2",
            "pytest-timeout",
            "uvloop ; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "swarmlink-peer=swarmlink.p2p.cli:cli",
            "swarmlink-tracker=swarmlink.p2p.tracker.run:cli",
        ],
    },
)
