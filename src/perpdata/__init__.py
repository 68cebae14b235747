"""Multi-exchange perpetual-futures market data ingestion."""
