[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "proxykit"
version = "0.1.0"
description = "Proxy protocol building blocks: VMess and VLESS connections, WebSocket framing, forwarder groups with health checks, rule-based routing and a DHCP address pool."
requires-python = ">=3.10"
keywords = ["proxy", "vmess", "vless", "websocket", "forwarder", "rule", "dhcp"]
classifiers = [
    "Development Status :: 4 - Beta",
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
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["proxykit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
