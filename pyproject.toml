[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nebulamesh"
version = "0.1.0"
description = "Overlay mesh networking core: packet headers, a stateful firewall, host maps, lighthouse discovery and handshake timers"
requires-python = ">=3.10"
dependencies = []
keywords = ["mesh", "overlay", "vpn", "firewall", "conntrack", "lighthouse", "handshake"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nebulamesh"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
