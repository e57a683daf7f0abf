"""
ussdflow - USSD session engine.

Runs operator-authored dialog graphs (menus, inputs, responses, conditionals)
one handset turn at a time, behind a FastAPI gateway.
"""
