# src/services/dispatch_api/__init__.py
"""
REST API ядра диспетчеризации (FastAPI).
"""
