from . import data, db, energy, plc, polling

__all__ = ["data", "db", "energy", "plc", "polling"]
