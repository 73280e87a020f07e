"""Core infrastructure shared by every faultline component."""
