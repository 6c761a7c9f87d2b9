"""
agents — long-running and one-shot processes around copy trading.

Agents:
- CopyTradeInitializer: creates a copy-trade portfolio and requests its initial fill
- CopyTrader: fills new portfolios' initial positions and acks the initializer
"""
