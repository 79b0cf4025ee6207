"""Pydantic schemas for the login shield API."""
