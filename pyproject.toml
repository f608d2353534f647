[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "milterkit"
version = "0.1.0"
description = "Milter protocol client and server for writing and testing mail filters"
requires-python = ">=3.10"
dependencies = []
keywords = ["milter", "mail", "smtp", "filter", "sendmail", "postfix"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Email :: Filters",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
milter-check = "milterkit.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["milterkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
