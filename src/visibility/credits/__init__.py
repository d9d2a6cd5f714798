"""Credits — bonding-curve pricer, fee policy and the credit ledger."""
