"""
Provider adapters for the checkout portal:
- Billing (Stripe card payments, Zoho Billing invoices)
- E-signature (DocuSign)
- CRM (Zoho CRM)
"""
