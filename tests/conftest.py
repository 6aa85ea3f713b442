"""Shared fixtures: every scenario runs against a fresh engine on a temp SQLite file."""

import asyncio
import os
import tempfile

# Keep test log files out of the working tree; must run before Config is imported.
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="fantasy_engine_logs_"))

import pytest

from fantasy_engine.main import FantasyEngine


PLAYERS = [f"player-{i:02d}" for i in range(1, 16)]

ROSTER_A = PLAYERS[0:11]   # player-01 .. player-11
ROSTER_B = PLAYERS[1:12]   # player-02 .. player-12
ROSTER_C = PLAYERS[4:15]   # player-05 .. player-15


def batting(player_key, runs, balls=0):
    """Stat line payload; with balls=0 the points equal the runs below 50."""
    return {'player_key': player_key, 'runs_scored': runs, 'balls_faced': balls}


def entry_payload(tournament_id, participant, players, captain, vice_captain):
    return {
        'tournament_id': tournament_id,
        'participant': participant,
        'players': list(players),
        'captain': captain,
        'vice_captain': vice_captain,
    }


async def seed_three_way(engine, preset=None):
    """
    Tournament with three ranked participants:

        alice 85, bob 42.5, carol 10
    """
    tournament = await engine.create_tournament("Three way", preset)
    await engine.submit_stat_lines({
        'tournament_id': tournament.id,
        'stat_lines': [
            batting('player-01', 40),
            batting('player-02', 20),
            batting('player-12', 10),
        ],
    })
    await engine.register_entry(entry_payload(tournament.id, 'alice', ROSTER_A, 'player-01', 'player-02'))
    await engine.register_entry(entry_payload(tournament.id, 'bob', ROSTER_B, 'player-02', 'player-12'))
    await engine.register_entry(entry_payload(tournament.id, 'carol', ROSTER_C, 'player-05', 'player-06'))
    return tournament.id


@pytest.fixture
def run_engine(tmp_path):
    """Return a runner that executes an async scenario(engine) and returns its result."""
    database_url = f"sqlite:///{tmp_path / 'engine.db'}"

    def runner(scenario):
        async def wrapper():
            engine = FantasyEngine(database_url)
            await engine.start()
            try:
                return await scenario(engine)
            finally:
                await engine.close()

        return asyncio.run(wrapper())

    return runner
