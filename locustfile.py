"""
Locust load tests for the heart squares API.

Install: pip install -e .[load]
Run: locust -f locustfile.py --host=http://127.0.0.1:5050

For headless: locust -f locustfile.py --host=http://127.0.0.1:5050 \
    --users 10 --spawn-rate 2 --run-time 1m --headless

Purchases only run against the simulation provider; set LOCUST_PLAYER to a
seeded player slug and ALLOW_SIMULATION_PAYMENTS=1 on the server if a real
provider is active.
"""

import os
import random
from locust import HttpUser, task, between


class HeartSquaresUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self.player = os.getenv("LOCUST_PLAYER", "demo-player")
        self.admin_token = os.getenv("LOCUST_ADMIN_TOKEN")

    def _open_square(self):
        r = self.client.get(f"/api/players/{self.player}", name="/api/players/[player]")
        if r.status_code != 200:
            return None
        open_squares = [s for s in r.json().get("squares", []) if not s["isPurchased"]]
        return random.choice(open_squares)["id"] if open_squares else None

    @task(10)
    def ping(self):
        self.client.get("/__ping")

    @task(8)
    def player_page(self):
        self.client.get(f"/api/players/{self.player}", name="/api/players/[player]")

    @task(3)
    def create_intent(self):
        square_id = self._open_square()
        if square_id:
            self.client.post("/api/payment/create-intent", json={"squareId": square_id})

    @task(1)
    def simulated_purchase(self):
        square_id = self._open_square()
        if not square_id:
            return
        with self.client.post(
            "/api/payment/simulation/process",
            json={"squareId": square_id, "donorName": "Load Test", "isAnonymous": True},
            catch_response=True,
        ) as resp:
            # 409 is a lost race for the square, which is expected under load
            if resp.status_code in (200, 409):
                resp.success()

    @task(1)
    def metrics(self):
        if self.admin_token:
            self.client.get(
                "/admin/metrics",
                headers={"Authorization": f"Bearer {self.admin_token}"},
            )
