"""Outbound email (collaboration invitations).

Services:
    - MailSender: console or SendGrid delivery, failures reported as status.
"""
