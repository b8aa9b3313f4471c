"""
Locust Load Test Suite: queue join/status surges.

Seed an event whose sale is open (or set SCHEDULER_ENABLED to let the
status updater open it), then point the run at it:

  QUEUE_EVENT_ID=1 locust -f locustfile.py --tags surge     # Join + poll storm
  QUEUE_EVENT_ID=1 locust -f locustfile.py --tags anonymous # X-Session-ID callers
  QUEUE_EVENT_ID=1 locust -f locustfile.py --tags edge      # Bad input
  QUEUE_EVENT_ID=1 locust -f locustfile.py                  # All tests

After a surge, verify:
  SELECT COUNT(*) FROM queue_entries
   WHERE event_id = X AND status IN ('active', 'processing');
Should be <= events.concurrent_users
"""

import os
import random
import string
import uuid

from locust import HttpUser, between, events, tag, task

EVENT_ID = int(os.environ.get("QUEUE_EVENT_ID", "1"))


def random_email():
    return f"load_{random.randint(100000, 999999)}@test.com"


def random_username():
    return "u_" + "".join(random.choices(string.ascii_lowercase, k=10))


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Queue surge against event {EVENT_ID}")
    print("=" * 60)


def register_and_login(client) -> dict:
    email = random_email()
    client.post("/api/v1/auth/register", json={
        "email": email,
        "username": random_username(),
        "password": "loadtest123",
    })
    resp = client.post("/api/v1/auth/login", json={
        "email": email,
        "password": "loadtest123",
    })
    if resp.status_code == 200:
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}
    return {}


class SurgeUser(HttpUser):
    """
    TEST 1: Sale opens, everyone joins at once and then polls their status.

    Run: locust -f locustfile.py --tags surge -u 500 -r 100 --run-time 60s
    """
    wait_time = between(0.5, 2)

    def on_start(self):
        self.headers = register_and_login(self.client)
        self.joined = False
        self.session_id = None

    @tag("surge")
    @task(1)
    def join(self):
        if self.joined or not self.headers:
            return
        with self.client.post(
            f"/api/v1/queue/events/{EVENT_ID}/join",
            json={},
            headers=self.headers,
            name="/api/v1/queue/events/{id}/join",
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 201):
                self.joined = True
                resp.success()
            elif resp.status_code in (400, 403, 409):
                resp.success()  # Expected: sold out, not on sale, grace window
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("surge")
    @task(8)
    def poll_status(self):
        if not self.joined:
            return
        with self.client.get(
            f"/api/v1/queue/events/{EVENT_ID}/status",
            headers=self.headers,
            name="/api/v1/queue/events/{id}/status",
            catch_response=True,
        ) as resp:
            if resp.status_code != 200:
                resp.failure(f"Unexpected: {resp.status_code}")
                return
            resp.success()
            if resp.json().get("status") == "processing":
                self.buy()

    def buy(self):
        resp = self.client.get(
            f"/api/v1/sessions/events/{EVENT_ID}/active",
            headers=self.headers,
            name="/api/v1/sessions/events/{id}/active",
        )
        if resp.status_code != 200:
            return
        session_id = resp.json()["id"]
        # Half of the admitted users walk away and let the window lapse
        if random.random() < 0.5:
            return
        self.client.post(
            f"/api/v1/sessions/{session_id}/abandon",
            headers=self.headers,
            name="/api/v1/sessions/{id}/abandon",
        )
        self.joined = False

    @tag("surge")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class AnonymousUser(HttpUser):
    """
    TEST 2: Anonymous visitors identified only by X-Session-ID.

    Run: locust -f locustfile.py --tags anonymous -u 200 -r 50 --run-time 60s
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = {"X-Session-ID": uuid.uuid4().hex}
        self.joined = False

    @tag("anonymous")
    @task
    def join_then_poll(self):
        if not self.joined:
            resp = self.client.post(
                f"/api/v1/queue/events/{EVENT_ID}/join",
                json={},
                headers=self.headers,
                name="/api/v1/queue/events/{id}/join [anon]",
            )
            self.joined = resp.status_code in (200, 201)
            return
        self.client.get(
            f"/api/v1/queue/events/{EVENT_ID}/status",
            headers=self.headers,
            name="/api/v1/queue/events/{id}/status [anon]",
        )


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases. The service should answer with proper error codes.

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = register_and_login(self.client)

    @tag("edge")
    @task
    def unknown_event(self):
        with self.client.post(
            "/api/v1/queue/events/999999/join",
            json={},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 404:
                resp.success()
            else:
                resp.failure(f"Expected 404, got {resp.status_code}")

    @tag("edge")
    @task
    def missing_identity(self):
        with self.client.post(
            f"/api/v1/queue/events/{EVENT_ID}/join",
            json={},
            catch_response=True,
        ) as resp:
            if resp.status_code == 401:
                resp.success()
            else:
                resp.failure(f"Expected 401, got {resp.status_code}")

    @tag("edge")
    @task
    def status_without_joining(self):
        with self.client.get(
            f"/api/v1/queue/events/{EVENT_ID}/status",
            headers={"X-Session-ID": uuid.uuid4().hex},
            catch_response=True,
        ) as resp:
            if resp.status_code == 404:
                resp.success()
            else:
                resp.failure(f"Expected 404, got {resp.status_code}")

    @tag("edge")
    @task
    def bad_extension(self):
        with self.client.post(
            "/api/v1/sessions/999999/extend",
            json={"minutes": 0},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code in (404, 422):
                resp.success()
            else:
                resp.failure(f"Expected 404/422, got {resp.status_code}")
