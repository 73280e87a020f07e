"""Transparent TCP relays used to simulate network partitions."""

from faultline.proxy.partition import CLIENT, PartitionController, PartitionProxy
from faultline.proxy.relay import Relay
from faultline.proxy.rewrite import (
    AddressAnnouncementRule,
    FunctionRule,
    RewriteRule,
    StreamRewriter,
    decode_announcement,
    encode_announcement,
)

__all__ = [
    "CLIENT",
    "AddressAnnouncementRule",
    "FunctionRule",
    "PartitionController",
    "PartitionProxy",
    "Relay",
    "RewriteRule",
    "StreamRewriter",
    "decode_announcement",
    "encode_announcement",
]
