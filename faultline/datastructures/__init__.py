"""Shared datastructures for faultline."""
