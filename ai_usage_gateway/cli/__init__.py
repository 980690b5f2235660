"""
Command-line interface for the AI Usage Gateway.
"""
