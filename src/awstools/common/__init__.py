"""Components shared by the awstools command line utilities.

This module contains AWS session handling, configuration value resolution
and KMS helpers.
"""
