"""DM-to-Buy backend: Instagram DM/comment automation for Shopify stores."""
