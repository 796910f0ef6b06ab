[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "icemux"
version = "0.1.0"
description = "Multiplex ICE TCP and UDP traffic over shared sockets, keyed by STUN username fragment"
requires-python = ">=3.10"
keywords = ["ice", "stun", "webrtc", "udp", "tcp", "multiplexing", "nat-traversal"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Internet",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["icemux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
