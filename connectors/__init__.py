"""Connectors - integrations with external line-of-business systems.

``connectors.rest`` is the generic, configuration-driven framework: any REST
partner (ERP, accounting platform, webhook source) is described as data and
executed through it. Flow step handlers reach external systems only through
this package.
"""
