[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "uutarget"
version = "1.0.0"
description = "Target-side i.MX provisioning tools: bootstream installer, fastboot-over-FunctionFS daemon and UTP command daemon"
requires-python = ">=3.10"
dependencies = []
keywords = ["i.MX", "bootstream", "BCB", "MBR", "fastboot", "functionfs", "utp", "flashing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Installation/Setup",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sdimage = "uutarget.sdimage:main"
ufb = "uutarget.fastboot:main"
uuc = "uutarget.uuc:main"

[tool.hatch.build.targets.wheel]
packages = ["uutarget"]

[tool.pytest.ini_options]
addopts = "-ra"
