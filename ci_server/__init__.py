"""
CI Server module.

FastAPI transport that receives GitHub webhook deliveries and hands them
to the ci_webhooks dispatcher.
"""
