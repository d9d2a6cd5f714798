#!/usr/bin/env python3
"""Visibility market invariant checks against the fee schedule and config."""

from visibility.invariants import check


if __name__ == "__main__":
    raise SystemExit(check())
