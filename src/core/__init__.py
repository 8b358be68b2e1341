"""
Core business logic for coach-client connections.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
or any infrastructure concerns. This separation means we can test the
connection rules in isolation and swap storage if needed.
"""
