"""Lister — scheduled and sale-driven NFT listing bot for thirdweb MarketplaceV3."""

__version__ = "0.1.0"
