"""Persistence — append-only event log and versioned state store."""
