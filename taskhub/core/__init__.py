"""Core TaskHub modules.

Storage, validation, services and the sync engine. Nothing in here depends
on a particular interface (CLI or web).
"""
