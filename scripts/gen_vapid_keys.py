"""This script generates a VAPID key pair for Web Push.

Output is a YAML snippet, to be merged in the `push.web_push` section of `config.yaml`. Keys must be generated once, changing them invalidates all the existing browser subscriptions.
"""

from reminder.helpers.vapid import generate_vapid_keys

private_key, public_key = generate_vapid_keys()
print("push:")
print("  web_push:")
print(f"    vapid_private_key: {private_key}")
print(f"    vapid_public_key: {public_key}")
