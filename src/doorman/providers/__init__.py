"""Provider clients and services for Vercel Firewall and Cloudflare WAF."""
