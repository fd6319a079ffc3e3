"""Relayer client."""

from zkpool.client.relayer_client import RelayerClient, synthesize_out2_path

__all__ = ["RelayerClient", "synthesize_out2_path"]
