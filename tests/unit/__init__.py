"""
Unit tests

Everything here runs without Docker: the container runtime, the remote
executor and the clock are replaced with the fakes from conftest.py.
"""
