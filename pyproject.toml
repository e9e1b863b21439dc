[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsrelay"
version = "0.1.0"
description = "A forwarding DNS server with rule-based upstream routing, caching and answer rewriting"
requires-python = ">=3.10"
keywords = ["dns", "dns-over-https", "doh", "dns-over-tls", "resolver", "proxy", "forwarder"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]
dependencies = [
    "dnspython>=2.4",
    "pyyaml>=6.0",
    "cachetools>=5.3",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[project.scripts]
dnsrelay = "dnsrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["dnsrelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
