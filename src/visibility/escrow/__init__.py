"""Escrow — service registry, execution state machine and settlement."""
