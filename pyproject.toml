[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "egressd"
version = "1.9.0"
description = "Egress service core: request admission by CPU and memory cost, handler process management, metrics aggregation and media pipeline message handling"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "egress",
    "recording",
    "streaming",
    "rtmp",
    "hls",
    "metrics",
    "prometheus",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.setuptools.packages.find]
include = ["egressd*"]

[tool.pytest.ini_options]
addopts = "-ra"
