"""
Cart Copilot
Rebuilds a grocery cart from previous orders and prepares a Review Pack for
human approval. Checkout is always left to the human.
"""

__version__ = '1.0.0'
