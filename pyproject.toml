[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cankit"
version = "0.1.0"
description = "CAN frame formatting, log conversion, SAE J1939 and ISO-TP command line tools for SocketCAN"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "canfd", "socketcan", "j1939", "isotp", "iso15765", "automotive", "candump"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN) :: J1939",
    "Topic :: System :: Networking",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
log2asc = "cankit.log2asc:main"
log2long = "cankit.log2long:main"
j1939acd = "cankit.j1939acd:main"
j1939cat = "cankit.j1939cat:main"
j1939spy = "cankit.j1939spy:main"
isotpsend = "cankit.isotpsend:main"
isotpsniffer = "cankit.isotpsniffer:main"

[tool.hatch.build.targets.wheel]
packages = ["cankit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
