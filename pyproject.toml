[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "segmirror"
version = "0.1.0"
description = "A self-hosted mirror server for crowd-sourced video skip segments, fed from a CSV dump"
requires-python = ">=3.10"
keywords = ["skip segments", "mirror", "http server", "api", "csv import"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Typing :: Typed",
]
dependencies = [
    "starlette",
    "httpx",
    "sqlalchemy>=2.0",
    "python-dotenv",
    "uvicorn",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "respx",
]

[project.scripts]
segmirror = "segmirror.app:main"

[tool.hatch.build.targets.wheel]
packages = ["segmirror"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
