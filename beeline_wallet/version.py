"""Beeline Wallet Meta information.
   Beeline Wallet keeps Hive account keys in an encrypted local vault.
"""
__title__ = 'beeline_wallet'
__description__ = (
   'Beeline Wallet keeps Hive account keys in an encrypted '
   'local vault.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 Beeline Wallet Authors'
__author__ = 'Beeline Wallet Authors'
__license__ = 'Apache-2.0'
