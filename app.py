import dataclasses
import json
import time
import streamlit as st
import pandas as pd

from vaultsim.config import ScenarioConfig
from vaultsim.core import VaultError
from vaultsim.engine import SimulationEngine
from vaultsim.strategy import ACTION_TYPES, ActionId

st.set_page_config(page_title="Pooled Vault Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=st.session_state.seed)
    return st.session_state.engine


def reset_engine(reset_config: bool = False) -> None:
    if reset_config:
        cfg = ScenarioConfig()
        seed = 1
        st.session_state.cfg = cfg
        st.session_state.seed = seed
    else:
        cfg = st.session_state.get("cfg", ScenarioConfig())
        seed = st.session_state.get("seed", 1)
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=seed)


engine = get_engine()
vault = engine.vault
deployment = engine.deployment

st.title("Pooled Vault Simulator")
st.caption("Time model: 1 tick = 1 reward-stream step. Amounts are integer asset units.")

def _fmt_duration(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    mins = int(seconds // 60)
    secs = seconds - (mins * 60)
    return f"{mins}m {secs:0.1f}s"

def _fmt(value) -> str:
    return f"{float(value):,.0f}"

def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _run_guarded(label: str, fn, *args) -> None:
    try:
        result = fn(*args)
    except VaultError as exc:
        st.error(f"{label} rejected ({type(exc).__name__}): {exc}")
        return
    st.success(f"{label} ok: {result}")

with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        vault = engine.vault
        deployment = engine.deployment
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
    st.caption("Restart resets the simulation to tick 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input(
        "Random seed",
        min_value=1,
        max_value=100000,
        key="seed",
    )

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=500, value=25)
    c3, c4 = st.columns(2)
    run_one = c3.button("Step 1 tick")
    run_many = c4.button("Run N ticks")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one:
        start_ts = time.time()
        engine.step(1)
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    if run_many:
        total = int(run_ticks)
        start_ts = time.time()
        for idx in range(total):
            engine.step(1)
            progress = (idx + 1) / total
            progress_bar.progress(progress, text=f"Run progress: {progress:.0%}")
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    st.caption(f"Current tick: {engine.tick}")

    st.subheader("Holders")
    if st.button("Add holder"):
        engine.add_holder()
    engine.cfg.p_deposit = st.slider("Deposit probability", 0.0, 1.0, float(engine.cfg.p_deposit), step=0.05)
    engine.cfg.p_withdraw = st.slider("Withdraw probability", 0.0, 1.0, float(engine.cfg.p_withdraw), step=0.05)
    engine.cfg.p_claim = st.slider("Claim probability", 0.0, 1.0, float(engine.cfg.p_claim), step=0.05)
    engine.cfg.deposit_size_mean = st.number_input(
        "Deposit size mean",
        min_value=1.0,
        value=float(engine.cfg.deposit_size_mean),
        step=100.0,
    )

    st.subheader("Agent")
    engine.cfg.agent_enabled = st.checkbox("Agent enabled", value=bool(engine.cfg.agent_enabled))
    engine.cfg.target_utilization = st.slider(
        "Target utilization",
        0.0,
        1.0,
        float(engine.cfg.target_utilization),
        step=0.05,
    )
    engine.cfg.lending_yield_per_tick = st.number_input(
        "Lending yield per tick",
        min_value=0.0,
        max_value=0.1,
        value=float(engine.cfg.lending_yield_per_tick),
        step=0.0005,
        format="%.4f",
    )

tab_vault, tab_holders, tab_ops, tab_events = st.tabs(["Vault", "Holders", "Operations", "Events"])

vault_df = engine.metrics.vault_df()
holder_df = engine.metrics.holder_df()

with tab_vault:
    st.subheader("Vault KPIs")
    latest = vault.state()
    kpis = [
        ("Total assets", _fmt(latest["total_assets"])),
        ("Liquid", _fmt(latest["liquid"])),
        ("Allocated", _fmt(latest["total_allocated"])),
        ("Reserve required", _fmt(latest["reserve_required"])),
        ("Max allocatable", _fmt(latest["max_allocatable"])),
        ("Total shares", _fmt(latest["total_shares"])),
        ("Rewards distributed", _fmt(latest["rewards_distributed"])),
        ("Reward balance", _fmt(latest["reward_balance"])),
        ("Saturations", _fmt(latest["saturations"])),
        ("Invariant violations", _fmt(len(engine.violations))),
    ]
    _render_kpi_grid(kpis, columns=5)
    if engine.violations:
        st.error(f"Invariant violations: {engine.violations[-10:]}")

    if vault_df.empty:
        st.info("No metrics yet. Run some ticks.")
    else:
        st.subheader("Liquidity")
        st.line_chart(vault_df, x="tick", y=["liquid", "total_allocated", "reserve_required", "total_assets"])
        st.subheader("Strategy")
        st.line_chart(vault_df, x="tick", y=["strategy_idle", "strategy_deployed", "yield_minted_total"])
        st.subheader("Utilization")
        st.line_chart(vault_df, x="tick", y=["utilization"])
        st.subheader("Activity")
        st.line_chart(vault_df, x="tick", y=["ops_tick", "failed_ops_tick"])
        failures = engine.metrics.failures_df()
        if len(failures.columns) > 1:
            st.subheader("Rejected operations by cause")
            st.bar_chart(failures, x="tick")

with tab_holders:
    st.subheader("Holder accounts")
    holders = pd.DataFrame(vault.holders())
    if holders.empty:
        st.info("No holder accounts yet.")
    else:
        holders["wallet"] = [
            deployment.ledger.balance_of(vault.asset_id, hid) for hid in holders["holder_id"]
        ]
        holders["reward_wallet"] = [
            deployment.ledger.balance_of(vault.reward_asset_id, hid) for hid in holders["holder_id"]
        ]
        st.dataframe(holders.drop(columns=["reward_checkpoint"]), use_container_width=True)
    if not holder_df.empty:
        st.subheader("Shares over time")
        pivot = holder_df.pivot_table(index="tick", columns="holder_id", values="shares", aggfunc="last")
        st.line_chart(pivot)

with tab_ops:
    st.subheader("Manual operations")
    holder_options = engine.holder_ids or ["holder_0001"]
    c1, c2 = st.columns(2)
    with c1:
        with st.form("holder_ops"):
            holder = st.selectbox("Holder", holder_options)
            amount = st.number_input("Amount", min_value=1, value=100, step=10)
            op = st.radio("Operation", ["deposit", "withdraw", "claim"], horizontal=True)
            if st.form_submit_button("Submit"):
                if op == "deposit":
                    _run_guarded("Deposit", vault.deposit, holder, int(amount))
                elif op == "withdraw":
                    _run_guarded("Withdraw", vault.withdraw, holder, int(amount))
                else:
                    _run_guarded("Claim", vault.claim_rewards, holder)
    with c2:
        with st.form("admin_ops"):
            st.caption(f"Reserve ratio: {vault.liquidity.reserve_ratio_bps} bps, min liquidity: {vault.liquidity.min_liquidity}")
            bps = st.number_input("Reserve ratio (bps)", min_value=0, max_value=10000,
                                  value=int(vault.liquidity.reserve_ratio_bps), step=100)
            min_liq = st.number_input("Min liquidity", min_value=0, value=int(vault.liquidity.min_liquidity), step=50)
            if st.form_submit_button("Apply parameters"):
                _run_guarded("Reserve ratio", vault.set_reserve_ratio, deployment.admin_id, int(bps))
                _run_guarded("Min liquidity", vault.set_min_liquidity, deployment.admin_id, int(min_liq))

    st.subheader("Agent action")
    with st.form("agent_action"):
        action_name = st.selectbox("Action", [a.name for a in ActionId])
        action_id = ActionId[action_name]
        fields = [f.name for f in dataclasses.fields(ACTION_TYPES[action_id])]
        payload_text = st.text_area(
            "Payload (JSON)",
            value=json.dumps({f: (vault.asset_id if f == "asset_id" else 0) for f in fields}),
        )
        if st.form_submit_button("Validate and execute"):
            try:
                payload = json.loads(payload_text)
            except json.JSONDecodeError as exc:
                st.error(f"Payload is not valid JSON: {exc}")
            else:
                ok, reason = vault.validate_agent_action(action_id, payload)
                st.write(f"Validation: {reason}")
                if ok:
                    _run_guarded(action_name, vault.execute_agent_action, deployment.agent_id, action_id, payload)

    st.subheader("Guardian")
    g1, g2, g3 = st.columns(3)
    if g1.button("Pause strategy"):
        _run_guarded("Pause", vault.pause_strategy, deployment.guardian_id)
    if g2.button("Resume strategy"):
        _run_guarded("Resume", vault.resume_strategy, deployment.admin_id)
    if g3.button("Emergency withdraw"):
        _run_guarded("Emergency withdraw", vault.emergency_withdraw_strategy, deployment.guardian_id)

with tab_events:
    st.subheader("Event log")
    n_events = st.slider("Events to show", min_value=10, max_value=500, value=100)
    events = vault.log.tail(n_events)
    if not events:
        st.info("No events yet.")
    else:
        rows = [
            {
                "tick": e.tick,
                "event": e.event_type,
                "actor": e.actor_id,
                "strategy": e.strategy_id,
                "asset": e.asset_id,
                "amount": e.amount,
                "meta": _format_event_meta(e.meta),
            }
            for e in reversed(events)
        ]
        st.dataframe(pd.DataFrame(rows), use_container_width=True)
