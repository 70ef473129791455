"""Command-line interface for visit_proof.

Run:
    python -m visit_proof leaderboard --relay events.jsonl
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

from visit_proof.csv_io import load_position_fixes
from visit_proof.errors import ProofOfVisitError, SensorError, TransportFailure, VerificationFailure
from visit_proof.events import EventFilter, join_to_envelope, proof_to_envelope, team_to_envelope
from visit_proof.geofence import (
    CheckpointTracker,
    Participant,
    ReplayLocationSource,
    StateChange,
    TrackerParams,
    TrackingSession,
)
from visit_proof.identity import (
    JsonFileIdentityStore,
    export_backup,
    import_backup,
    load_or_create_identity,
)
from visit_proof.ingest import EventLog
from visit_proof.models import (
    DEFAULT_MAX_ACCURACY_M,
    DEFAULT_TZ,
    BonusSchedule,
    CheckpointState,
    ProofEvent,
    ProofMethod,
    ScoringRules,
    ScoringType,
    Team,
    Tiebreak,
)
from visit_proof.proofs import generate_nfc_challenge, generate_nonce
from visit_proof.routes import load_route, place_checkpoints, save_route
from visit_proof.sampling import SamplingOptions
from visit_proof.scoring import aggregate_team_scores, leaderboard_stats, rank_teams
from visit_proof.timeutils import format_duration_ms, format_epoch_ms, now_ms, parse_epoch_ms
from visit_proof.transport import DEFAULT_TIMEOUT_SECONDS, RelayConfig, RelayPool

logger = logging.getLogger(__name__)


def _pool(args: argparse.Namespace) -> RelayPool:
    urls = tuple(args.relay or ["events.jsonl"])
    return RelayPool.from_config(RelayConfig(urls=urls, timeout_seconds=args.timeout_seconds))


def _parse_secrets(items: list[str] | None) -> dict[str, str]:
    secrets: dict[str, str] = {}
    for item in items or []:
        tag, sep, secret = item.partition("=")
        if not sep or not tag:
            raise SystemExit(f"--nfc-secret 格式应为 TAG=SECRET，收到：{item!r}")
        secrets[tag] = secret
    return secrets


async def _load_log(pool: RelayPool) -> EventLog:
    log = EventLog()
    await log.consume(pool.subscribe(EventFilter()))
    return log


async def _publish_all(pool: RelayPool, envelopes: list) -> tuple[int, int]:
    ok = 0
    failed = 0
    for env in envelopes:
        try:
            report = await pool.publish(env)
        except TransportFailure as exc:
            failed += 1
            print(f"发布失败：{env.id[:12]} {exc}", file=sys.stderr)
            continue
        ok += 1
        if report.failed:
            print(f"部分节点失败：{env.id[:12]} -> {', '.join(report.failed)}", file=sys.stderr)
    return ok, failed


def _cmd_sample(args: argparse.Namespace) -> int:
    route = load_route(args.route)
    options = SamplingOptions(
        count=args.count,
        min_distance_m=args.min_distance_m,
        seed=args.seed,
        max_tries=args.max_tries,
    )
    methods = [ProofMethod.GEOFENCE] + ([ProofMethod.NFC] if args.nfc else [])
    placed = place_checkpoints(route, options, radius_m=args.radius_m, methods=methods)
    save_route(placed, args.out)
    print(f"放置检查点：{len(placed.checkpoints)}/{args.count}（seed={args.seed}）")
    print(f"新路线 id={placed.id}，已导出：{args.out}")
    return 0


def _print_change(change: StateChange, tz_name: str) -> None:
    at = format_epoch_ms(change.timestamp_ms, tz_name)
    print(f"{at}  {change.checkpoint_id}: {change.previous.value} -> {change.current.value} ({change.reason})")


def _cmd_track(args: argparse.Namespace) -> int:
    route = load_route(args.route)
    fixes, summary = load_position_fixes(args.csv)
    identity = load_or_create_identity(JsonFileIdentityStore(args.identity))
    secrets = _parse_secrets(args.nfc_secret)

    window_end_ms = parse_epoch_ms(args.window_end, args.tz) if args.window_end else None
    params = TrackerParams(
        max_accuracy_m=args.max_accuracy_m,
        window_end_ms=window_end_ms,
        pow_difficulty=args.pow_difficulty,
    )
    participant = Participant(
        author=identity.author,
        team_id=args.team,
        challenge_ref=args.challenge_ref,
        route_ref=f"route:{route.id}",
    )
    proofs: list[ProofEvent] = []
    tracker = CheckpointTracker(route.checkpoints, participant, params, on_proof=proofs.append)

    def on_change(change: StateChange) -> None:
        _print_change(change, args.tz)
        if change.current is not CheckpointState.SEEN:
            return
        cp = route.checkpoint(change.checkpoint_id)
        if cp is None or ProofMethod.NFC not in cp.required_methods:
            return
        secret = secrets.get(cp.nfc_tag_id or "")
        if secret is None:
            print(f"  {cp.id} 需要NFC，但未提供 --nfc-secret {cp.nfc_tag_id}=...", file=sys.stderr)
            return
        wire = generate_nfc_challenge(cp.nfc_tag_id, change.timestamp_ms, secret)
        try:
            for follow_up in tracker.confirm_nfc(cp.id, wire, secret, change.timestamp_ms):
                _print_change(follow_up, args.tz)
        except VerificationFailure as exc:
            print(f"  NFC验证失败：{exc}", file=sys.stderr)

    source = ReplayLocationSource(fixes)
    session = TrackingSession(source, tracker, on_change=on_change)
    try:
        session.start()
    except SensorError as exc:
        print(f"无法开始定位：{exc}", file=sys.stderr)
        return 2
    try:
        source.replay()
    finally:
        session.stop()

    print(f"轨迹点：parsed={summary.rows_parsed}, skipped={summary.rows_skipped}；生成证明：{len(proofs)}")
    if proofs:
        ok, failed = asyncio.run(_publish_all(_pool(args), [proof_to_envelope(p) for p in proofs]))
        print(f"已发布：ok={ok}, failed={failed}")

    if args.json:
        print(json.dumps({cp_id: s.value for cp_id, s in tracker.states().items()}, ensure_ascii=False, indent=2))
    return 0


def _rules_from_args(args: argparse.Namespace) -> ScoringRules:
    total = args.total_checkpoints
    if total is None and args.route:
        total = len(load_route(args.route).checkpoints)
    bonus = None
    if args.speed_bonus or args.completion_bonus or args.perfect_bonus:
        bonus = BonusSchedule(
            speed_bonus=args.speed_bonus,
            completion_bonus=args.completion_bonus,
            perfect_score_bonus=args.perfect_bonus,
        )
    return ScoringRules(
        nfc_required=args.nfc_required,
        scoring_type=ScoringType(args.scoring_type),
        tiebreak=Tiebreak(args.tiebreak),
        bonus=bonus,
        pow_difficulty=args.pow_difficulty,
        total_checkpoints=total,
    )


def _cmd_leaderboard(args: argparse.Namespace) -> int:
    rules = _rules_from_args(args)
    log = asyncio.run(_load_log(_pool(args)))
    secrets = _parse_secrets(args.nfc_secret) or None
    scores = aggregate_team_scores(log.proof_copies(), rules, secrets)
    board = rank_teams(scores.values(), rules)
    teams = log.teams()

    if args.json:
        payload = {
            "leaderboard": [entry.to_dict() for entry in board],
            "stats": asdict(leaderboard_stats(scores)),
            "events": len(log),
            "dropped": log.dropped,
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0

    print(f"### 事件：{len(log)}（丢弃 {log.dropped}），证明：{len(log.proofs())}")
    print()
    print(f"{'rank':>4}  {'team':<20} {'score':>10} {'checkpoints':>11} {'proofs':>6}  elapsed")
    for entry in board:
        name = teams[entry.team_id].name if entry.team_id in teams and teams[entry.team_id].name else entry.team_id
        print(
            f"{entry.rank:>4}  {name[:20]:<20} {entry.score:>10.1f} {entry.unique_checkpoints:>11} "
            f"{entry.total_proofs:>6}  {format_duration_ms(entry.elapsed_ms)}"
        )
    stats = leaderboard_stats(scores)
    print()
    print(
        f"teams={stats.total_teams}, avg_score={stats.average_score:.1f}, "
        f"best={stats.highest_score:.1f}, checkpoints={stats.total_checkpoints}"
    )
    return 0


def _cmd_merkle(args: argparse.Namespace) -> int:
    log = asyncio.run(_load_log(_pool(args)))
    print(f"proofs={len(log.proofs())}")
    print(log.merkle_root())
    return 0


def _cmd_team_create(args: argparse.Namespace) -> int:
    identity = load_or_create_identity(JsonFileIdentityStore(args.identity))
    team = Team(
        id=args.team_id,
        name=args.name or args.team_id,
        captain=identity.author,
        invite_code=args.invite_code or generate_nonce(4),
        created_at_ms=now_ms(),
        max_members=args.max_members,
        challenge_ref=args.challenge_ref,
    )
    ok, _ = asyncio.run(_publish_all(_pool(args), [team_to_envelope(team)]))
    if not ok:
        return 1
    print(f"队伍已创建：{team.id}，邀请码：{team.invite_code}")
    return 0


def _cmd_team_join(args: argparse.Namespace) -> int:
    identity = load_or_create_identity(JsonFileIdentityStore(args.identity))
    env = join_to_envelope(args.team_id, identity.author, args.invite_code, now_ms())
    ok, _ = asyncio.run(_publish_all(_pool(args), [env]))
    if not ok:
        return 1
    print(f"已申请加入：{args.team_id}（成员 {identity.author[:12]}）")
    return 0


def _cmd_identity(args: argparse.Namespace) -> int:
    store = JsonFileIdentityStore(args.identity)
    if args.import_backup:
        restored = import_backup(args.import_backup, args.password or "")
        if restored is None:
            print("备份解密失败：密码错误或数据损坏", file=sys.stderr)
            return 1
        store.set_identity(restored)
        print(f"已恢复身份：{restored.author}")
        return 0

    identity = load_or_create_identity(store)
    print(f"author={identity.author}")
    if args.export_backup:
        if not args.password:
            print("导出备份需要 --password", file=sys.stderr)
            return 1
        print(export_backup(identity, args.password))
    return 0


def _add_relay_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--relay",
        action="append",
        default=None,
        help="事件日志节点（JSONL文件路径，可重复指定；默认 events.jsonl）",
    )
    p.add_argument(
        "--timeout-seconds",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help="单个节点的超时（秒）",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""

    p = argparse.ArgumentParser(prog="visit_proof")
    p.add_argument("--log-level", type=str, default="WARNING", help="日志级别（DEBUG/INFO/WARNING）")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_s = sub.add_parser("sample", help="沿路线自动放置检查点（可复现的随机采样）")
    p_s.add_argument("--route", type=str, required=True, help="输入路线JSON")
    p_s.add_argument("--out", type=str, default="route_with_checkpoints.json", help="输出路线JSON")
    p_s.add_argument("--count", type=int, default=10, help="检查点数量")
    p_s.add_argument("--min-distance-m", type=float, default=200.0, help="检查点之间的最小距离（米）")
    p_s.add_argument("--seed", type=int, default=42, help="随机种子（相同种子得到相同结果）")
    p_s.add_argument("--max-tries", type=int, default=None, help="最多尝试次数（默认 count*200）")
    p_s.add_argument("--radius-m", type=float, default=30.0, help="检查点围栏半径（米）")
    p_s.add_argument("--nfc", action="store_true", help="检查点同时要求NFC")
    p_s.set_defaults(func=_cmd_sample)

    p_t = sub.add_parser("track", help="回放轨迹CSV，驱动检查点状态机并发布证明")
    p_t.add_argument("--route", type=str, required=True, help="路线JSON（含检查点）")
    p_t.add_argument("--csv", type=str, default="fixes.csv", help="轨迹CSV（geoTime/latitude/longitude/horizontalAccuracy）")
    p_t.add_argument("--identity", type=str, default="identity.json", help="身份文件（不存在则自动创建）")
    p_t.add_argument("--team", type=str, default=None, help="队伍ID")
    p_t.add_argument("--challenge-ref", type=str, default=None, help="挑战引用（原样写入标签）")
    p_t.add_argument(
        "--max-accuracy-m",
        type=float,
        default=DEFAULT_MAX_ACCURACY_M,
        help="定位精度阈值：精度差于该值的点不触发任何状态变化",
    )
    p_t.add_argument("--window-end", type=str, default=None, help="挑战结束时间（例如 2025-06-01 18:00:00，或毫秒时间戳）")
    p_t.add_argument("--tz", type=str, default=DEFAULT_TZ, help="时区（IANA）")
    p_t.add_argument("--pow-difficulty", type=int, default=0, help="证明的工作量证明难度（前导0个数，0=关闭）")
    p_t.add_argument("--nfc-secret", action="append", default=None, help="模拟NFC：TAG=SECRET（可重复）")
    p_t.add_argument("--json", action="store_true", help="额外输出最终状态JSON")
    _add_relay_args(p_t)
    p_t.set_defaults(func=_cmd_track)

    p_l = sub.add_parser("leaderboard", help="从事件日志重建排行榜")
    p_l.add_argument(
        "--scoring-type",
        type=str,
        default=ScoringType.UNIQUE_CHECKPOINTS.value,
        choices=[t.value for t in ScoringType],
        help="计分方式",
    )
    p_l.add_argument(
        "--tiebreak",
        type=str,
        default=Tiebreak.ELAPSED_TIME.value,
        choices=[t.value for t in Tiebreak],
        help="同分规则",
    )
    p_l.add_argument("--nfc-required", action="store_true", help="只计入带有已验证NFC的证明")
    p_l.add_argument("--pow-difficulty", type=int, default=0, help="要求的工作量证明难度（0=不要求）")
    p_l.add_argument("--speed-bonus", type=float, default=0.0, help="速度奖励（用时<1小时）")
    p_l.add_argument("--completion-bonus", type=float, default=0.0, help="完成奖励（至少1个检查点）")
    p_l.add_argument("--perfect-bonus", type=float, default=0.0, help="全部检查点奖励")
    p_l.add_argument("--total-checkpoints", type=int, default=None, help="路线检查点总数")
    p_l.add_argument("--route", type=str, default=None, help="路线JSON（用于读取检查点总数）")
    p_l.add_argument("--nfc-secret", action="append", default=None, help="重新校验NFC：TAG=SECRET（可重复）")
    p_l.add_argument("--json", action="store_true", help="输出JSON")
    _add_relay_args(p_l)
    p_l.set_defaults(func=_cmd_leaderboard)

    p_m = sub.add_parser("merkle", help="计算所有证明ID的Merkle根")
    _add_relay_args(p_m)
    p_m.set_defaults(func=_cmd_merkle)

    p_tc = sub.add_parser("team-create", help="创建队伍（当前身份为队长）")
    p_tc.add_argument("--team-id", type=str, required=True, help="队伍ID")
    p_tc.add_argument("--name", type=str, default=None, help="队伍名称")
    p_tc.add_argument("--max-members", type=int, default=5, help="最大人数（含队长）")
    p_tc.add_argument("--invite-code", type=str, default=None, help="邀请码（默认随机生成）")
    p_tc.add_argument("--challenge-ref", type=str, default=None, help="挑战引用")
    p_tc.add_argument("--identity", type=str, default="identity.json", help="身份文件")
    _add_relay_args(p_tc)
    p_tc.set_defaults(func=_cmd_team_create)

    p_tj = sub.add_parser("team-join", help="用邀请码加入队伍")
    p_tj.add_argument("--team-id", type=str, required=True, help="队伍ID")
    p_tj.add_argument("--invite-code", type=str, required=True, help="邀请码")
    p_tj.add_argument("--identity", type=str, default="identity.json", help="身份文件")
    _add_relay_args(p_tj)
    p_tj.set_defaults(func=_cmd_team_join)

    p_i = sub.add_parser("identity", help="查看/备份/恢复身份")
    p_i.add_argument("--identity", type=str, default="identity.json", help="身份文件")
    p_i.add_argument("--export-backup", action="store_true", help="输出加密备份")
    p_i.add_argument("--import-backup", type=str, default=None, help="从加密备份恢复")
    p_i.add_argument("--password", type=str, default=None, help="备份密码")
    p_i.set_defaults(func=_cmd_identity)

    return p


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    try:
        return int(args.func(args))
    except (ProofOfVisitError, OSError, ValueError) as exc:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print(f"错误：{exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
