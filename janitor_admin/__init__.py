"""Operator CLI for the CI janitor."""
