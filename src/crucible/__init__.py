"""Prop-trading challenge ledger: simulated positions, equity, drawdown and pass/fail."""
