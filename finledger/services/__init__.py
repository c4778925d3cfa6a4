"""
Services Package

Infrastructure the ledger runs on: storage backends and the movement journal.
"""
