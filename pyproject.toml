[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kiroparse"
version = "0.1.0"
description = "Decoder for binary AWS event streams that turns CodeWhisperer responses into Anthropic-style SSE events"
requires-python = ">=3.10"
dependencies = []
keywords = ["event-stream", "aws", "sse", "parser", "codewhisperer", "tool-calls"]
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
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kiroparse"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
