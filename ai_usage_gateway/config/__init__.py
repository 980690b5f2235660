"""
Configuration loading for the AI Usage Gateway.
"""
