"""
Provider adapter tests:
- Billing (Stripe, Zoho Billing)
- E-signature (DocuSign)
- CRM (Zoho CRM)
"""
