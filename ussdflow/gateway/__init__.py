"""
gateway - thin FastAPI adapter between USSD aggregators and the engine.

All routing decisions live in ussdflow.engine; this package only parses
requests, calls one engine operation and shapes the response.
"""
