[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "natrelay"
version = "0.1.0"
description = "Relay server and client library for reaching hosts behind NAT: framed message transport, remote shell links and screen-tile helpers over one connection"
requires-python = ">=3.10"
keywords = ["nat", "relay", "tunnel", "remote-shell", "remote-desktop", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "msgpack",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["natrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
