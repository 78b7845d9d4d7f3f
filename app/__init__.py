"""
                Restaurant Payments - Telebirr Gateway Core

Mobile-money payment backend for the restaurant system: signed Telebirr
B2B and H5 (C2B) payment creation, verified asynchronous callbacks,
idempotent order reconciliation and a durable retry queue, with the
same hybrid Mock/Real service architecture as the ordering backend.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
