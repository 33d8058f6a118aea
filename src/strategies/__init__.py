"""Strategies package initialization"""

# Import classes only when needed to avoid circular imports
# Use direct imports in your code: from strategies.opportunity_scanner import OpportunityScanner

__all__ = [
    'OpportunityScanner',
]
