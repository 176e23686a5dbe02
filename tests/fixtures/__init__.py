"""
Test doubles for Support Pipeline.

Contains in-memory implementations of the external collaborators:
- fakes.py: Mailbox Gateway, Credential Vault, Order Lookup, Extra Package
  Biller, Classifier and Responder fakes that record their calls
"""
