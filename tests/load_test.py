"""
Load tests using Locust.

Simulates borrowers paying the service fee and polling their receipts.
Point the service at a PayNecta sandbox before running.

Run with: locust -f tests/load_test.py --host=http://localhost:8000
"""
import random

from locust import HttpUser, between, task


def _random_phone() -> str:
    return f"2547{random.randint(10000000, 99999999)}"


class BorrowerUser(HttpUser):
    """
    Simulated borrower.

    Pays the fee once, then checks the receipt and balance repeatedly the way
    the success page does.
    """

    wait_time = between(1, 3)  # Wait 1-3 seconds between requests

    def on_start(self) -> None:
        """Set up user-specific data."""
        self.phone = _random_phone()
        self.reference = None

    @task(2)
    def pay_service_fee(self) -> None:
        """Send an STK push for the service fee."""
        payload = {"phone": self.phone, "amount": 100, "loan_amount": 20000}

        with self.client.post("/pay", json=payload, catch_response=True) as response:
            if response.status_code == 200:
                self.reference = response.json()["reference"]
                response.success()
            elif response.status_code == 400:
                # Gateway refusal - don't count as failure
                self.reference = response.json().get("reference")
                response.success()
            else:
                response.failure(f"Unexpected status: {response.status_code}")

    @task(10)
    def poll_receipt(self) -> None:
        """Poll the receipt of the last payment."""
        if not self.reference:
            return
        self.client.get(f"/receipt/{self.reference}", name="/receipt/[reference]")

    @task(5)
    def get_balance(self) -> None:
        """Check balance."""
        self.client.get(f"/balance/{self.phone}", name="/balance/[phone]")

    @task(1)
    def get_health(self) -> None:
        """Check health endpoint."""
        self.client.get("/health")


class CallbackUser(HttpUser):
    """
    Replays webhook deliveries for unknown references.

    Every delivery must be acknowledged quickly regardless of content.
    """

    wait_time = between(0.5, 1.5)

    @task
    def deliver_webhook(self) -> None:
        payload = {
            "external_reference": f"ORDER-{random.randint(1, 10**12)}",
            "data": {"status": random.choice(["completed", "failed", "pending"])},
        }

        with self.client.post("/callback", json=payload, catch_response=True) as response:
            if response.status_code == 200 and response.json().get("ResultCode") == 0:
                response.success()
            else:
                response.failure(f"Callback not acknowledged: {response.status_code}")
