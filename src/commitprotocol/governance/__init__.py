from commitprotocol.governance.access_control import AccessControl, ReentrancyGuard

__all__ = ["AccessControl", "ReentrancyGuard"]
