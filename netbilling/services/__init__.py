"""
NetBilling - Services
Ledger, renovación, máquina de estados, sincronización de red y orquestación.
"""
