# examples/__init__.py
"""
devsplit examples package.

This package contains demonstration scripts showing how to use the devsplit framework.
"""
