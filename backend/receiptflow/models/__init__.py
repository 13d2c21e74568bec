"""Enumerations, pydantic schemas and ORM tables."""
