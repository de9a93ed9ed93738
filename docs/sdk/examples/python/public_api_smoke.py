import os
import sys

import requests

base_url = os.getenv("PRICING_BASE_URL", "http://localhost:8000").rstrip("/")
customer_email = os.getenv("PRICING_CUSTOMER_EMAIL")
customer_password = os.getenv("PRICING_CUSTOMER_PASSWORD")


def _customer_headers() -> dict[str, str]:
    if not customer_email or not customer_password:
        return {}
    login_response = requests.post(
        f"{base_url}/auth/customer/login",
        json={"email": customer_email, "password": customer_password},
        timeout=15,
    )
    login_response.raise_for_status()
    return {"Authorization": f"Bearer {login_response.json()['access_token']}"}


def main() -> int:
    roles_response = requests.get(f"{base_url}/store/customer-roles", timeout=15)
    roles_response.raise_for_status()

    role_response = requests.get(
        f"{base_url}/store/customer/role",
        headers=_customer_headers(),
        timeout=15,
    )
    role_response.raise_for_status()

    roles = roles_response.json()["items"]
    current = role_response.json()
    print(f"Pricing roles: {', '.join(item['slug'] for item in roles)}")
    print(f"Authenticated: {current['authenticated']}")
    print(f"Current role: {current['role']} ({current['role_info']['group_id']})")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"Storefront role probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
