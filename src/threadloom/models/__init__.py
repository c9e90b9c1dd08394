"""Pydantic domain models for Threadloom."""
