"""
Mailchimp ↔ CRM Sync Service - Core Package

Keeps a Mailchimp audience in sync with a CRM: changed CRM records are pushed
to Mailchimp, Mailchimp webhook events and newly signed up members flow back
into the CRM.

Core modules:
- config: Environment settings and per-deployment sync configurations
- field_maps / group_conditions / mapper: Field translation between CRM and Mailchimp
- filter: Eligibility of CRM records for Mailchimp
- crm_to_mailchimp: Revision based sync CRM → Mailchimp
- mailchimp_to_crm_webhook: Webhook event handling Mailchimp → CRM
- mailchimp_to_crm_cron: Periodic import of new Mailchimp members into the CRM
- endpoints: Webhook endpoint registry
- notifications: Data owner emails and Teams run alerts
"""

__version__ = "1.0.0"

# Make modules available for import
__all__ = [
    'config',
    'field_maps',
    'group_conditions',
    'mapper',
    'filter',
    'crm_to_mailchimp',
    'mailchimp_to_crm_webhook',
    'mailchimp_to_crm_cron',
    'endpoints',
    'notifications',
    'main'
]
