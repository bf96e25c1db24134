[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wxbridge"
version = "0.1.0"
description = "Disk-backed image queues, capture scheduling and fail2ban-aware uploading for weather webcams"
requires-python = ">=3.10"
dependencies = []
keywords = ["webcam", "weather", "aviation", "image queue", "upload", "scheduler", "backoff"]
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
    "Topic :: Multimedia :: Graphics :: Capture",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["wxbridge"]

[tool.pytest.ini_options]
addopts = "-ra"
