import secrets
import os
from cryptography.fernet import Fernet

# Generate secrets
fernet_key = Fernet.generate_key().decode()
cron_secret = secrets.token_urlsafe(32)
admin_secret = secrets.token_urlsafe(32)

print(f"Generated TOKEN_ENCRYPTION_KEY: {fernet_key}")
print(f"Generated CRON_SECRET: {cron_secret}")
print(f"Generated ADMIN_SECRET_KEY: {admin_secret}")

# Read template
template_path = ".env.template"
env_path = ".env"

generated = {
    "TOKEN_ENCRYPTION_KEY": fernet_key,
    "CRON_SECRET": cron_secret,
    "ADMIN_SECRET_KEY": admin_secret,
}

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        content = f.read()

    # Replace only the generated keys, keep everything else from the template
    new_lines = []
    for line in content.splitlines():
        key = line.split("=", 1)[0]
        if key in generated:
            new_lines.append(f"{key}={generated[key]}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
