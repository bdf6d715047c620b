"""
Control API package.
"""
