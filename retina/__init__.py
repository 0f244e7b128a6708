"""Parsers for network traffic, from Ethernet, IP and TCP/UDP packets to DNS, HTTP and TLS sessions."""

__version__ = "0.1.0"