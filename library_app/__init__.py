"""Library App - Lending Core Package

This package contains the core modules of the lending service:
- Domain models (book.py, member.py, borrowing.py)
- Database layer (database.py)
- Stock accounting (stock.py) and loan records (loans.py)
- Library facade used by the API and CLI (library.py)
"""
