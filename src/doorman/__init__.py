"""Doorman - firewall rules as code for Vercel Firewall and Cloudflare WAF."""

__version__ = "0.1.0"
