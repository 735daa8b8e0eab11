[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tapvsock"
version = "0.1.0"
description = "User-space network plumbing for virtual machines: port forwarding, UDP proxying, an embedded DNS service and frame transport helpers"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = [
    "virtual-machine",
    "networking",
    "port-forwarding",
    "dns",
    "udp-proxy",
    "qemu",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Internet :: Name Service (DNS)",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
tapvsock-test-companion = "tapvsock.testcompanion:main"
tapvsock-qemu-wrapper = "tapvsock.qemu_wrapper:main"

[tool.hatch.build.targets.wheel]
packages = ["tapvsock"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
