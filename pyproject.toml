[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kairpodsd"
version = "0.2.1"
description = "AirPods management library: AAP packet handling, device state, L2CAP channel and battery drain estimation"
requires-python = ">=3.11"
keywords = ["airpods", "bluetooth", "l2cap", "aap", "battery", "noise-control"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
    "Framework :: AsyncIO",
    "Typing :: Typed",
]
dependencies = [
    "lmdb",
    "platformdirs",
    "tomli-w",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["kairpodsd"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
