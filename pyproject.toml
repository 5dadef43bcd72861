[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nabu"
version = "0.1.0"
description = "SOCKS5 front end that tunnels CONNECT sessions over a framed UDP transport with reliable delivery and RTT-adaptive retries"
requires-python = ">=3.10"
dependencies = []
keywords = ["socks5", "proxy", "tunnel", "udp", "relay", "reliable-transport"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nabu"]

[tool.hatch.build.targets.sdist]
include = ["nabu", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
