[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sprs"
version = "1.0.0"
description = "Transparent proxy supervisor: applies nftables/iptables rules and routes, then runs and watches a proxy core"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["tproxy", "nftables", "iptables", "transparent-proxy", "tun", "supervisor"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
sprs = "sprs.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["sprs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
