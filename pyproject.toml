[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatlink"
version = "0.1.0"
description = "A TCP chat server and terminal client with friends, groups, offline messages and Redis fan-out between servers"
requires-python = ">=3.10"
keywords = ["chat", "server", "client", "redis", "pubsub", "sqlite", "instant-messaging"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
]
dependencies = [
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
chatlink-server = "chatlink.server:main"
chatlink-client = "chatlink.client:main"

[tool.hatch.build.targets.wheel]
packages = ["chatlink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
