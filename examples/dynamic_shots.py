#!/usr/bin/env python
"""
Dynamic Scheduling Example: one task per shot

Each shot is modeled independently; shots are handed to whichever worker is
idle, so slow shots do not hold up the rest. One worker is killed halfway
through and its shot is rerun elsewhere.

Run with:
    python examples/dynamic_shots.py
"""

import logging

import torch
from torch_blockop import ProcessCluster, SchedulerConfig, schedule_dynamic


def model_shot(shot):
    """Toy forward modeling: a Ricker wavelet delayed by the source offset."""
    source_x, nt, dt = shot
    t = torch.arange(nt, dtype=torch.float64) * dt
    receivers = torch.linspace(0.0, 1000.0, 16, dtype=torch.float64)
    delays = (receivers - source_x).abs() / 1500.0
    arg = (torch.pi * 25.0 * (t[None, :] - 0.1 - delays[:, None])) ** 2
    return (1.0 - 2.0 * arg) * torch.exp(-arg)


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    shots = {f"shot-{k:02d}": (100.0 * k, 2000 + 500 * (k % 3), 1e-3) for k in range(12)}
    config = SchedulerConfig.from_env(heartbeat_interval=0.2)

    with ProcessCluster(3) as cluster:
        stream = schedule_dynamic(shots, model_shot, cluster, config=config)
        for k, result in enumerate(stream):
            print(f"{result.task_id} done on {result.worker_id} "
                  f"(attempt {result.attempts}): {tuple(result.value.shape)}")
            if k == 3:
                victim = next(iter(stream.in_flight.values()), None)
                if victim is not None:
                    print(f"killing {victim}")
                    cluster.kill(victim)

    print(f"{len(stream.completed)} shots, {len(stream.events)} dispatches, state={stream.state.value}")


if __name__ == "__main__":
    main()
