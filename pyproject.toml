[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "d2texrip"
version = "0.1.0"
description = "Extract texture entries from game .pkg archives into DDS and PNG files"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["textures", "dds", "pkg", "extraction", "dxgi", "texconv"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Graphics Conversion",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
d2texrip = "d2texrip.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["d2texrip"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
