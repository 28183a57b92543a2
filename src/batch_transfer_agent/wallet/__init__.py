"""Wallet and chain access for the batch transfer agent.

Provides the encrypted keystore credential, the web3 chain client with
gasless relay through the paymaster gateway, chain presets and the global
name registry client. Keys are decrypted only for the duration of a batch
and are never persisted.
"""
