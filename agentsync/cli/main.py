#!/usr/bin/env python3
"""CLI for the agent coordination layer.

Usage:
    agentsync init-db                       Initialize the database
    agentsync serve                         Start the API server
    agentsync enqueue <target> --payload J  Enqueue a task
    agentsync claim <consumer_id>           Claim the most urgent eligible task
    agentsync complete <task_id>            Complete a held task
    agentsync fail <task_id> <error>        Record a task failure
    agentsync expire --older-than SECONDS   Cancel stale pending tasks
    agentsync reap --older-than SECONDS     Fail abandoned claims
    agentsync tasks                         List tasks
    agentsync checkpoint <role> <session>   Append a checkpoint
    agentsync resume <session>              Show the resume point of a session
    agentsync verify <checkpoint_id>        Verify a checkpoint
    agentsync state-get <key>               Read a state key
    agentsync state-set <key> <json>        Write a state key
    agentsync learnings                     List active learnings
"""

import argparse
import json
import sys
from datetime import timedelta

from agentsync.core.checkpoint import get_checkpoint_log
from agentsync.core.database import init_db
from agentsync.core.learnings import get_learning_registry
from agentsync.core.state_store import get_state_store
from agentsync.core.work_queue import get_work_queue


def _load_json(value, label):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON for {label}: {e}")
        sys.exit(1)


def _print_task(task):
    print(f"Task: {task.id}")
    print(f"  Status: {task.status.value}")
    print(f"  Target: {task.target or '(broadcast)'}")
    print(f"  Kind: {task.kind.value}")
    print(f"  Priority: {task.priority}")
    print(f"  Retries: {task.retry_count}/{task.max_retries}")
    if task.claimed_by:
        print(f"  Claimed by: {task.claimed_by} at {task.claimed_at}")
    if task.error_message:
        print(f"  Error: {task.error_message}")
    print(f"  Payload: {json.dumps(task.payload)}")


def cmd_init_db(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully!")


def cmd_serve(args):
    """Start the FastAPI server."""
    import uvicorn
    print(f"Starting agentsync API on http://{args.host}:{args.port}")
    uvicorn.run("agentsync.api.main:app", host=args.host, port=args.port, reload=args.reload)


def cmd_enqueue(args):
    task = get_work_queue().enqueue(
        source=args.source,
        target=args.target,
        kind=args.kind,
        payload=_load_json(args.payload, "payload") or {},
        priority=args.priority,
        max_retries=args.max_retries,
    )
    print(f"Enqueued task {task.id} (priority {task.priority})")


def cmd_claim(args):
    task = get_work_queue().claim(
        args.consumer_id,
        target_filter=args.target,
        include_broadcast=args.include_broadcast,
    )
    if task is None:
        print("No eligible task.")
        return
    _print_task(task)


def cmd_complete(args):
    completed = get_work_queue().complete(
        args.task_id,
        result=_load_json(args.result, "result"),
        consumer_id=args.consumer_id,
    )
    if not completed:
        print(f"Task {args.task_id} could not be completed (missing, not held, or finished)")
        sys.exit(1)
    print(f"Task {args.task_id} completed")


def cmd_fail(args):
    queue = get_work_queue()
    if not queue.fail(args.task_id, args.error_message):
        print(f"Task {args.task_id} could not be failed (missing, not held, or finished)")
        sys.exit(1)
    task = queue.get(args.task_id)
    print(f"Task {args.task_id} is now {task.status.value} (retry {task.retry_count}/{task.max_retries})")


def cmd_expire(args):
    cancelled = get_work_queue().expire_stale(timedelta(seconds=args.older_than), args.reason)
    print(f"Cancelled {cancelled} stale pending task(s)")


def cmd_reap(args):
    reaped = get_work_queue().reap_abandoned(timedelta(seconds=args.older_than), args.reason)
    print(f"Reaped {reaped} abandoned claim(s)")


def cmd_tasks(args):
    """List tasks in claim order."""
    tasks = get_work_queue().list_tasks(status=args.status, target=args.target, limit=args.limit)

    if not tasks:
        print("No tasks found.")
        return

    print(f"\n{'Task ID':<38} {'Status':<12} {'Pri':>4} {'Target':<20} {'Claimed by':<20}")
    print(f"{'-'*38} {'-'*12} {'-'*4} {'-'*20} {'-'*20}")

    for task in tasks:
        print(
            f"{str(task.id):<38} {task.status.value:<12} {task.priority:>4} "
            f"{(task.target or '*'):<20} {(task.claimed_by or ''):<20}"
        )


def cmd_checkpoint(args):
    checkpoint = get_checkpoint_log().append(
        owner_role=args.owner_role,
        session_key=args.session_key,
        description=args.description,
        state_snapshot=_load_json(args.snapshot, "snapshot") or {},
    )
    print(f"Checkpoint {checkpoint.id} (sequence {checkpoint.sequence_number}) created")


def cmd_resume(args):
    """Show where a session should resume from."""
    checkpoint = get_checkpoint_log().latest_verified(args.session_key)
    if checkpoint is None:
        print(f"No verified checkpoint for session {args.session_key}")
        sys.exit(1)

    print(f"Resume point for session {args.session_key}:")
    print(f"  Checkpoint: {checkpoint.id}")
    print(f"  Sequence: {checkpoint.sequence_number}")
    print(f"  Owner: {checkpoint.owner_role}")
    print(f"  Verified by: {checkpoint.verified_by} at {checkpoint.verified_at}")
    if checkpoint.description:
        print(f"  Description: {checkpoint.description}")
    print(f"  Snapshot: {json.dumps(checkpoint.state_snapshot, indent=2)}")


def cmd_verify(args):
    status = "failed" if args.failed else "verified"
    if not get_checkpoint_log().verify(args.checkpoint_id, args.verifier, status):
        print(f"Checkpoint {args.checkpoint_id} could not be verified (missing or already verified)")
        sys.exit(1)
    print(f"Checkpoint {args.checkpoint_id} marked {status}")


def cmd_state_get(args):
    current = get_state_store().get(args.key)
    if current is None:
        print(f"State key {args.key} not found")
        sys.exit(1)
    print(f"{args.key} (version {current.version}):")
    print(json.dumps(current.value, indent=2))


def cmd_state_set(args):
    version = get_state_store().set(args.key, _load_json(args.value, "value"), description=args.description)
    print(f"{args.key} is now at version {version}")


def cmd_learnings(args):
    """List active learnings."""
    learnings = get_learning_registry().active_learnings(learning_type=args.type, limit=args.limit)

    if not learnings:
        print("No active learnings.")
        return

    print(f"\n{'Score':>5} {'Type':<16} {'Title':<50}")
    print(f"{'-'*5} {'-'*16} {'-'*50}")
    for learning in learnings:
        title = learning.title[:47] + "..." if len(learning.title) > 50 else learning.title
        print(f"{learning.effectiveness_score:>5} {learning.learning_type.value:<16} {title:<50}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentsync",
        description="Agent coordination layer CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init-db
    subparsers.add_parser("init-db", help="Initialize the database")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", "-p", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")

    # enqueue
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a task")
    enqueue_parser.add_argument("target", nargs="?", help="Intended consumer (omit to broadcast)")
    enqueue_parser.add_argument("--source", help="Producer identity")
    enqueue_parser.add_argument("--kind", default="request",
                                choices=["request", "response", "notification", "handoff", "sync"])
    enqueue_parser.add_argument("--payload", help="JSON payload")
    enqueue_parser.add_argument("--priority", type=int, help="Higher is more urgent")
    enqueue_parser.add_argument("--max-retries", type=int)

    # claim
    claim_parser = subparsers.add_parser("claim", help="Claim the most urgent eligible task")
    claim_parser.add_argument("consumer_id")
    claim_parser.add_argument("--target", help="Only tasks addressed to this target")
    claim_parser.add_argument("--include-broadcast", action="store_true",
                              help="With --target, also accept tasks without a target")

    # complete
    complete_parser = subparsers.add_parser("complete", help="Complete a held task")
    complete_parser.add_argument("task_id")
    complete_parser.add_argument("--result", help="JSON result document")
    complete_parser.add_argument("--consumer-id", help="Reject unless this consumer holds the claim")

    # fail
    fail_parser = subparsers.add_parser("fail", help="Record a task failure")
    fail_parser.add_argument("task_id")
    fail_parser.add_argument("error_message")

    # expire
    expire_parser = subparsers.add_parser("expire", help="Cancel stale pending tasks")
    expire_parser.add_argument("--older-than", type=int, required=True, help="Age in seconds")
    expire_parser.add_argument("--reason", default="Expired: pending too long")

    # reap
    reap_parser = subparsers.add_parser("reap", help="Fail claims held too long")
    reap_parser.add_argument("--older-than", type=int, required=True, help="Claim age in seconds")
    reap_parser.add_argument("--reason", default="Reaped: claim abandoned")

    # tasks
    tasks_parser = subparsers.add_parser("tasks", help="List tasks")
    tasks_parser.add_argument("--status")
    tasks_parser.add_argument("--target")
    tasks_parser.add_argument("--limit", type=int, default=20, help="Limit number of results")

    # checkpoint
    checkpoint_parser = subparsers.add_parser("checkpoint", help="Append a checkpoint")
    checkpoint_parser.add_argument("owner_role")
    checkpoint_parser.add_argument("session_key")
    checkpoint_parser.add_argument("--description", "-d")
    checkpoint_parser.add_argument("--snapshot", help="JSON state snapshot")

    # resume
    resume_parser = subparsers.add_parser("resume", help="Show the resume point of a session")
    resume_parser.add_argument("session_key")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a checkpoint")
    verify_parser.add_argument("checkpoint_id")
    verify_parser.add_argument("--verifier", required=True)
    verify_parser.add_argument("--failed", action="store_true", help="Mark verification as failed")

    # state-get / state-set
    state_get_parser = subparsers.add_parser("state-get", help="Read a state key")
    state_get_parser.add_argument("key")

    state_set_parser = subparsers.add_parser("state-set", help="Write a state key")
    state_set_parser.add_argument("key")
    state_set_parser.add_argument("value", help="JSON value")
    state_set_parser.add_argument("--description", "-d")

    # learnings
    learnings_parser = subparsers.add_parser("learnings", help="List active learnings")
    learnings_parser.add_argument("--type")
    learnings_parser.add_argument("--limit", type=int, default=20)

    return parser


COMMANDS = {
    "init-db": cmd_init_db,
    "serve": cmd_serve,
    "enqueue": cmd_enqueue,
    "claim": cmd_claim,
    "complete": cmd_complete,
    "fail": cmd_fail,
    "expire": cmd_expire,
    "reap": cmd_reap,
    "tasks": cmd_tasks,
    "checkpoint": cmd_checkpoint,
    "resume": cmd_resume,
    "verify": cmd_verify,
    "state-get": cmd_state_get,
    "state-set": cmd_state_set,
    "learnings": cmd_learnings,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Dispatch to command handler
    handler = COMMANDS.get(args.command)
    if handler:
        handler(args)
    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
