"""Readers for rollup inputs from an Espresso sequencer and an EVM base layer, with epoch indexing, claim and output tracking, a nonce service and config documentation generation."""

__version__ = "0.1.0"