"""Web-search gateway (Tavily, Exa) with vendor fallback and runtime helpers."""
