"""
Recurring Billing Engine
Blueprint registry.
"""
