"""
budgetkeeper - Source Package

The backend of a personal budgeting app: users, categories,
transactions, and recurring rules that materialize transactions
on their due dates.

DESIGN PRINCIPLES:
1. Every user's data lives in its own directory of JSON documents
2. Recurring rules catch up on every missed period, never skip one
3. One failing rule or user never stops the others
4. Every engine run is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "budgetkeeper Team"
