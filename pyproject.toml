[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kernmem"
version = "0.1.0"
description = "A simulated 32-bit kernel memory subsystem: boot allocator, page descriptors, buddy, slab, kmalloc, paging and vmalloc"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "memory", "allocator", "buddy", "slab", "paging", "multiboot", "simulation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kernmem"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
