[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "teensybridge"
version = "1.2.1"
description = "Bridge between Teensy-based cockpit controls and simulator variables or Raspberry Pi hardware buttons"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "teensy",
    "flight-simulator",
    "cockpit",
    "usb-hid",
    "hidraw",
    "raspberry-pi",
    "gpio",
    "datarefs",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Games/Entertainment :: Simulation",
    "Topic :: System :: Hardware :: Universal Serial Bus (USB) :: Human Interface Device (HID)",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
teensybridge-pi = "teensybridge.pi:main"

[tool.hatch.build.targets.wheel]
packages = ["teensybridge"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
