"""
Integration modules for Payment Providers

Contains the adapters for external payment gateways (card acquirers, hosted
payment windows, PSP management APIs).
"""
