"""Core package initialization"""

# Import classes only when needed to avoid circular imports
# Use direct imports in your code: from core.risk_gate import RiskGate

__all__ = [
    'MarketConditionAnalyzer',
    'ParameterOptimizer',
    'PerformanceTracker',
    'RiskGate',
]
