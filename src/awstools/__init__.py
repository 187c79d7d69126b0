"""AWS operational tools.

This package provides command line utilities that resolve configuration
values from AWS secret and parameter stores and manage KMS encrypted values.
"""

__version__ = "1.0.0"
