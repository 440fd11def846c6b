"""ShadowLink Vault Meta information.
   ShadowLink Vault keeps messages, contacts and profile encrypted at rest
   under a single master password.
"""
__title__ = 'shadowlink_vault'
__description__ = (
   'ShadowLink Vault keeps user records encrypted at rest '
   'under a single master password.'
)
__version__ = '1.0.0'
__copyright__ = 'Copyright (c) 2026 ShadowLink Developers'
__author__ = 'ShadowLink Developers'
__author_email__ = 'dev@shadowlink.invalid'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/shadowlink/shadowlink-vault'
