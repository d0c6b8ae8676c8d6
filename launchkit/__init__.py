"""launchkit - build, install, launch and debug Bazel-built apps on simulators and devices."""
