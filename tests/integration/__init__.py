"""
Integration tests against a real Docker daemon

They need an image with a Cartridge application and are skipped unless
CARTRIDGE_TEST_IMAGE names one.
"""
