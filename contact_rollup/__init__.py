"""
contact_rollup - Multi-account contact rollup

Folds the contacts of many source accounts into one deduplicated target
account, and removes rollup-written contacts from the target on request.
"""

__version__ = "0.1.0"
