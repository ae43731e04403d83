[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeexp"
version = "0.1.0"
description = "Host metrics exporter exposing system statistics in the Prometheus text format"
requires-python = ">=3.10"
dependencies = []
keywords = ["metrics", "monitoring", "exporter", "prometheus", "system"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nodeexp = "nodeexp.exporter:main"

[tool.hatch.build.targets.wheel]
packages = ["nodeexp"]

[tool.pytest.ini_options]
addopts = "-ra"
