[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fstools"
version = "0.1.0"
description = "Root filesystem, overlay and flash volume handling for embedded Linux systems"
requires-python = ">=3.10"
dependencies = []
keywords = ["overlayfs", "mtd", "ubi", "jffs2", "snapshot", "extroot", "embedded"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fstools"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
