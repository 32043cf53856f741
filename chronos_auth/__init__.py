"""Astral Chronos authentication and access-control service"""
