"""
                        Services Module

Business logic services with the hybrid architecture pattern.
Each external integration has Mock (development) and Real implementations.

Services:
    - payment: Telebirr B2B / C2B gateway core (signing, callbacks, retries)
    - notifications: Operator alerts via Twilio SMS and SendGrid email
    - orders: Business order collaborator used by the payment core
"""
