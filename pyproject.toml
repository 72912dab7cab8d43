[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "davecrypt"
version = "1.0.0"
description = "Codec-aware end-to-end encryption of media frames with AES-128-GCM and key generation management"
requires-python = ">=3.10"
keywords = ["encryption", "aes-gcm", "media", "frames", "h264", "h265", "av1", "vp8", "vp9", "opus", "e2ee"]
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
    "Topic :: Security :: Cryptography",
    "Topic :: Multimedia :: Video",
    "Topic :: Multimedia :: Sound/Audio",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["davecrypt"]

[tool.pytest.ini_options]
addopts = "-ra"
