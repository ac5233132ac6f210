"""
SFD Lending Core

Loan amortization, repayment schedules, payment allocation, loan status
derivation and subsidy accounting for partner microfinance institutions (SFDs).
All monetary values use Decimal in whole FCFA units.
"""

__version__ = "1.0.0"
