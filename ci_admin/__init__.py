"""
CI Admin module.

Command line tools for registering repositories and inspecting builds.
"""
