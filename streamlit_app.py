from __future__ import annotations

import asyncio
from pathlib import Path

import streamlit as st

from visit_proof.events import EventFilter
from visit_proof.ingest import EventLog
from visit_proof.models import DEFAULT_TZ, BonusSchedule, ScoringRules, ScoringType, Tiebreak
from visit_proof.scoring import aggregate_team_scores, leaderboard_stats, rank_teams
from visit_proof.timeutils import format_duration_ms, format_epoch_ms
from visit_proof.transport import JsonlRelay, RelayPool


def _parse_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def _parse_secrets(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in _parse_lines(text):
        tag, sep, secret = line.partition("=")
        if sep and tag:
            out[tag.strip()] = secret.strip()
    return out


async def _read_envelopes(paths: tuple[str, ...]) -> list[dict[str, object]]:
    pool = RelayPool([JsonlRelay(p) for p in paths])
    return [env.to_dict() for env in await pool.query(EventFilter())]


@st.cache_data(show_spinner=False)
def _load_envelopes(paths: tuple[str, ...], mtimes: tuple[float, ...]) -> list[dict[str, object]]:
    _ = mtimes  # part of cache key so appended journals reload automatically
    return asyncio.run(_read_envelopes(paths))


def main() -> None:
    st.set_page_config(page_title="到访证明：排行榜", layout="wide")
    st.title("到访证明：按事件日志重建排行榜")

    with st.sidebar:
        st.subheader("事件日志与时区")
        tz_name = st.text_input("时区（IANA）", value=DEFAULT_TZ)
        relay_text = st.text_area("事件日志 JSONL（每行一个路径）", value="events.jsonl")

        st.subheader("计分规则")
        scoring_type = st.selectbox("计分方式", [t.value for t in ScoringType], index=0)
        tiebreak = st.selectbox("同分规则", [t.value for t in Tiebreak], index=0)
        nfc_required = st.checkbox("只计入已验证NFC的证明", value=False)
        total_checkpoints = st.number_input("路线检查点总数（0=未知）", value=0, min_value=0, step=1)

        with st.expander("高级参数（通常不用改）", expanded=False):
            pow_difficulty = st.number_input("工作量证明难度（0=不要求）", value=0, min_value=0, step=1)
            speed_bonus = st.number_input("速度奖励（用时<1小时）", value=0.0, step=10.0)
            completion_bonus = st.number_input("完成奖励", value=0.0, step=10.0)
            perfect_bonus = st.number_input("全部检查点奖励", value=0.0, step=10.0)
            secrets_text = st.text_area("重新校验NFC（每行 TAG=SECRET，可留空）", value="")

    paths = tuple(_parse_lines(relay_text))
    missing = [p for p in paths if not Path(p).exists()]
    if not paths or len(missing) == len(paths):
        st.error(f"找不到事件日志：{', '.join(missing) or '（未填写）'}。可先用 `python -m visit_proof track` 生成。")
        return
    if missing:
        st.warning(f"以下日志不存在，已忽略：{', '.join(missing)}")
        paths = tuple(p for p in paths if p not in missing)

    bonus = None
    if speed_bonus or completion_bonus or perfect_bonus:
        bonus = BonusSchedule(
            speed_bonus=float(speed_bonus),
            completion_bonus=float(completion_bonus),
            perfect_score_bonus=float(perfect_bonus),
        )
    rules = ScoringRules(
        nfc_required=nfc_required,
        scoring_type=ScoringType(scoring_type),
        tiebreak=Tiebreak(tiebreak),
        bonus=bonus,
        pow_difficulty=int(pow_difficulty),
        total_checkpoints=int(total_checkpoints) or None,
    )

    try:
        raw = _load_envelopes(paths, tuple(Path(p).stat().st_mtime for p in paths))
    except Exception as exc:
        st.exception(exc)
        return

    log = EventLog()
    log.add_many(raw)
    proofs = log.proofs()
    teams = log.teams()
    scores = aggregate_team_scores(log.proof_copies(), rules, _parse_secrets(secrets_text) or None)
    board = rank_teams(scores.values(), rules)
    stats = leaderboard_stats(scores)

    st.subheader("汇总")
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("上榜队伍", str(stats.total_teams))
    c2.metric("最高分", f"{stats.highest_score:.1f}")
    c3.metric("平均分", f"{stats.average_score:.1f}")
    c4.metric("平均用时", format_duration_ms(stats.average_elapsed_ms))
    st.caption(f"事件 {len(log)}（丢弃 {log.dropped}），证明 {len(proofs)}，被访问的检查点 {stats.total_checkpoints}")

    st.subheader("排行榜")
    rows = [
        {
            "rank": e.rank,
            "team": teams[e.team_id].name if e.team_id in teams else e.team_id,
            "team_id": e.team_id,
            "score": round(e.score, 3),
            "checkpoints": e.unique_checkpoints,
            "proofs": e.total_proofs,
            "elapsed": format_duration_ms(e.elapsed_ms),
            "first_activation": format_epoch_ms(e.first_activation_ms, tz_name),
            "last_activation": format_epoch_ms(e.last_activation_ms, tz_name),
        }
        for e in board
    ]
    st.dataframe(rows, use_container_width=True, height=420)

    with st.expander("队伍", expanded=False):
        team_rows = [
            {
                "team_id": t.id,
                "name": t.name,
                "captain": t.captain[:12],
                "members": len(t.roster),
                "max_members": t.max_members,
                "created_at": format_epoch_ms(t.created_at_ms, tz_name),
            }
            for t in teams.values()
        ]
        st.dataframe(team_rows, use_container_width=True, height=300)

    with st.expander("证明明细", expanded=False):
        proof_rows = [
            {
                "time": format_epoch_ms(p.timestamp_ms, tz_name),
                "team_id": p.team_id,
                "checkpoint_id": p.checkpoint_id,
                "state": p.state.value,
                "nfc": p.nfc_verified,
                "author": p.author[:12],
                "id": p.id[:16],
            }
            for p in proofs
        ]
        st.dataframe(proof_rows, use_container_width=True, height=520)

    st.caption(f"Merkle 根（全部证明ID）：{log.merkle_root() or '（空）'}")


if __name__ == "__main__":
    main()
