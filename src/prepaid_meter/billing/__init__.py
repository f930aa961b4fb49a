"""Tariff lookup and the prepaid balance ledger."""
