"""
Hole-in-One Engine - Sweeps API Tests
=====================================
"""

from httpx import AsyncClient


API = "/api/v1"


class TestSweepEndpoints:
    async def test_staff_only(self, client: AsyncClient, player_headers):
        assert (await client.post(f"{API}/sweeps/run", headers=player_headers)).status_code == 403
        assert (await client.get(f"{API}/sweeps/auto-miss-status", headers=player_headers)).status_code == 403

    async def test_run_sweep(self, client, clock, competition, player_headers, staff_headers):
        entry = (
            await client.post(
                f"{API}/entries", json={"competition_id": str(competition.id)}, headers=player_headers
            )
        ).json()

        empty = (await client.post(f"{API}/sweeps/run", headers=staff_headers)).json()
        assert empty == {"entries_auto_missed": [], "verifications_auto_missed": []}

        clock.advance(minutes=20)
        report = (await client.post(f"{API}/sweeps/run", headers=staff_headers)).json()
        assert report["entries_auto_missed"] == [entry["id"]]

    async def test_auto_miss_status(self, client, clock, competition, player_headers, staff_headers):
        entry = (
            await client.post(
                f"{API}/entries", json={"competition_id": str(competition.id)}, headers=player_headers
            )
        ).json()
        await client.post(f"{API}/entries/{entry['id']}/outcome", json={"outcome": "win"}, headers=player_headers)

        status = (await client.get(f"{API}/sweeps/auto-miss-status", headers=staff_headers)).json()
        assert status["pending"] == 1
        assert status["overdue"] == 0
        assert status["next_deadline"].startswith("2024-06-02T00:00:00")

        clock.advance(hours=12, minutes=1)
        status = (await client.get(f"{API}/sweeps/auto-miss-status", headers=staff_headers)).json()
        assert status["overdue"] == 1

        report = (await client.post(f"{API}/sweeps/run", headers=staff_headers)).json()
        assert len(report["verifications_auto_missed"]) == 1

        status = (await client.get(f"{API}/sweeps/auto-miss-status", headers=staff_headers)).json()
        assert status["pending"] == 0
        assert status["next_deadline"] is None
