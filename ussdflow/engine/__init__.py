"""
engine - the USSD session execution core.

Pure graph resolution (resolver), flow / input validation (validator), the
SessionEngine state machine (service) and the ExpirySweeper (sweeper).
Persistence is reached only through the contracts in engine.contracts.
"""
from ussdflow.engine.service import SessionEngine
from ussdflow.engine.sweeper import ExpirySweeper

__all__ = ["SessionEngine", "ExpirySweeper"]
