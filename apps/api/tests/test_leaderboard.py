from __future__ import annotations

from app.analytics.leaderboard import LeaderboardEntry, rank_leaderboard


Q1_2025 = {"start_date": "2025-01-01", "end_date": "2025-03-31"}


def test_ties_share_a_rank_and_the_next_count_is_dense() -> None:
    entries = [
        LeaderboardEntry(name="d", count=2),
        LeaderboardEntry(name="b", count=4),
        LeaderboardEntry(name="a", count=5),
        LeaderboardEntry(name="c", count=4),
    ]

    ranked = rank_leaderboard(entries)

    assert [(entry.rank, entry.count) for entry in ranked] == [(1, 5), (2, 4), (2, 4), (3, 2)]
    assert [entry.name for entry in ranked] == ["a", "b", "c", "d"]


def test_empty_leaderboard_is_empty() -> None:
    assert rank_leaderboard([]) == []


def test_all_zero_counts_share_first_place() -> None:
    ranked = rank_leaderboard([LeaderboardEntry(name="x", count=0), LeaderboardEntry(name="y", count=0)])

    assert [entry.rank for entry in ranked] == [1, 1]


def test_admin_sees_every_active_sga_including_zero_counts(client, auth_headers, warehouse) -> None:
    response = client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": ["Outbound"]},
        headers=auth_headers("admin"),
    )

    assert response.status_code == 200
    assert response.json()["entries"] == [
        {"name": "John Smith", "count": 2, "rank": 1},
        {"name": "Jane Doe", "count": 0, "rank": 2},
        {"name": "Pat Quinn", "count": 0, "rank": 2},
    ]


def test_channel_and_source_filters_narrow_counts(client, auth_headers, warehouse) -> None:
    both = client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": ["Outbound", "Marketing"]},
        headers=auth_headers("manager"),
    )
    other_source = client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": ["Outbound", "Marketing"], "sources": ["Events"]},
        headers=auth_headers("manager"),
    )

    counts = {entry["name"]: entry["count"] for entry in both.json()["entries"]}
    assert counts == {"John Smith": 2, "Jane Doe": 1, "Pat Quinn": 0}
    assert {entry["count"] for entry in other_source.json()["entries"]} == {0}


def test_sga_personal_filter_replaces_requested_names(client, auth_headers, warehouse) -> None:
    response = client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": ["Outbound", "Marketing"], "sga_names": ["John Smith"]},
        headers=auth_headers("sga", sgaFilter="Jane Doe"),
    )

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert [entry["name"] for entry in entries] == ["Jane Doe"]
    assert entries[0]["count"] == 1


def test_leaderboard_requires_a_channel(client, auth_headers, warehouse) -> None:
    response = client.post(
        "/api/sga-hub/leaderboard",
        json={**Q1_2025, "channels": []},
        headers=auth_headers("admin"),
    )

    assert response.status_code == 422
    assert warehouse.query_count == 0


def test_leaderboard_results_are_cached_under_the_hub_tag(client, auth_headers, warehouse) -> None:
    payload = {**Q1_2025, "channels": ["Outbound"]}

    client.post("/api/sga-hub/leaderboard", json=payload, headers=auth_headers("admin"))
    client.post("/api/sga-hub/leaderboard", json=payload, headers=auth_headers("revops_admin"))
    assert warehouse.query_count == 1

    client.post("/api/admin/refresh-cache", headers=auth_headers("admin"))
    client.post("/api/sga-hub/leaderboard", json=payload, headers=auth_headers("admin"))
    assert warehouse.query_count == 2
