"""Flows - business processes orchestrated over connectors.

``flows.p2p`` implements Procure-to-Pay: purchase order receipt through
payment, with three-way matching between PO, goods receipt and invoice.
"""
