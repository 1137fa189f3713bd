"""Core module for configuration and shared infrastructure."""
