"""mail/ -- Templated transactional email for Survista.

Layer rule: mail/ imports only stdlib, third-party libraries and core/.
auth/ receives a mailer by injection and never imports this package.
"""
