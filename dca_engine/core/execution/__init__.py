"""
Transaction building, submission and settlement.
"""
