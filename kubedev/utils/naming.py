"""
Naming utilities for generated identifiers.

- Image tags: "k3x8n2a" (random, lowercase alphanumeric)
- Secret names: "devspace-auth-registry-example-com" (DNS-1123 safe)
"""

import re
from nanoid import generate

TAG_ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


def generate_image_tag(length: int = 7) -> str:
    """Generate a random image tag (default 7 chars, ~78B combinations)."""
    return generate(TAG_ALPHABET, length)


def dns_safe_name(text: str, max_length: int = 63) -> str:
    """
    Convert text to a DNS-1123 label.

    Examples:
        "registry.example.com:5000" -> "registry-example-com-5000"
        "Hub.Docker.com" -> "hub-docker-com"
    """
    name = text.lower()
    name = re.sub(r'[^a-z0-9-]+', '-', name)
    name = re.sub(r'-+', '-', name)
    name = name.strip('-')[:max_length].rstrip('-')
    return name
