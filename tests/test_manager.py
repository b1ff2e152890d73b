"""Test the session manager"""

import asyncio

import pytest

from conftest import MiB, chunked, make_file
from transfer.codes import CodeRegistry
from transfer.errors import (
    CapacityExhausted,
    CodeExpired,
    CodeNotFound,
    InvalidFile,
    InvalidRole,
    SessionAlreadyJoined,
    SessionNotFound,
)
from transfer.manager import SessionManager
from transfer.models import Role, SessionState


async def download(manager, handle):
    return b"".join([chunk async for chunk in manager.receive(handle)])


class TestScenarios:
    """End-to-end flows through the manager"""

    async def test_ten_mib_in_one_mib_chunks(self, fixed_code_manager):
        manager = fixed_code_manager
        file, data = make_file(10 * MiB)

        code, sender = await manager.create_upload_session(file)
        assert code == "AB12CD"
        assert manager.registry.lookup(code).session_id == sender.session_id

        joined_file, receiver = await manager.join_as_receiver("AB12CD")
        assert joined_file == file

        receiving = asyncio.create_task(download(manager, receiver))
        for chunk in chunked(data, MiB):
            await manager.push_chunk(sender, chunk)
        received = await asyncio.wait_for(receiving, timeout=5.0)

        status = manager.get_status(receiver)
        assert status.state is SessionState.COMPLETED
        assert status.progress == 1.0
        assert status.bytes_transferred == 10 * MiB
        assert received == data
        assert manager.session(receiver).receiver_checksum == file.checksum

    async def test_unknown_code(self, manager):
        with pytest.raises(CodeNotFound):
            await manager.join_as_receiver("ZZZZZZ")

    async def test_join_normalizes_input(self, manager):
        file, _ = make_file(10)
        code, _ = await manager.create_upload_session(file)
        _, handle = await manager.join_as_receiver(f"  {code.lower()} ")
        assert handle.code == code
        assert handle.role is Role.RECEIVER

    async def test_second_receiver_rejected(self, manager):
        file, _ = make_file(10)
        code, _ = await manager.create_upload_session(file)
        await manager.join_as_receiver(code)

        with pytest.raises(SessionAlreadyJoined):
            await manager.join_as_receiver(code)

    async def test_concurrent_joins_admit_one(self, manager):
        file, _ = make_file(10)
        code, _ = await manager.create_upload_session(file)

        results = await asyncio.gather(
            *(manager.join_as_receiver(code) for _ in range(5)),
            return_exceptions=True,
        )
        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, SessionAlreadyJoined)]
        assert len(admitted) == 1
        assert len(rejected) == 4

    async def test_concurrent_sessions_are_independent(self, manager):
        files = [make_file(4096, name=f"f{i}.bin") for i in range(3)]
        sessions = []
        for file, data in files:
            code, sender = await manager.create_upload_session(file)
            _, receiver = await manager.join_as_receiver(code)
            sessions.append((sender, receiver, data))

        codes = {sender.code for sender, _, _ in sessions}
        assert len(codes) == 3

        async def run(sender, receiver, data):
            receiving = asyncio.create_task(download(manager, receiver))
            for chunk in chunked(data, 512):
                await manager.push_chunk(sender, chunk)
            return await receiving

        results = await asyncio.gather(*(run(*s) for s in sessions))
        assert results == [data for _, _, data in sessions]


class TestPolicy:
    """Test capacity, roles and limits"""

    async def test_capacity_exhausted(self, manager, policy):
        for i in range(policy.max_active_sessions):
            await manager.create_upload_session(make_file(10, name=f"{i}.bin")[0])

        with pytest.raises(CapacityExhausted):
            await manager.create_upload_session(make_file(10)[0])

    async def test_finished_sessions_free_capacity(self, manager, policy):
        handles = []
        for i in range(policy.max_active_sessions):
            _, handle = await manager.create_upload_session(make_file(10, name=f"{i}.bin")[0])
            handles.append(handle)

        await manager.cancel(handles[0])
        code, _ = await manager.create_upload_session(make_file(10)[0])
        assert code != handles[0].code

    async def test_file_too_large(self, manager, policy):
        file, _ = make_file(16)
        file = file.model_copy(update={"total_size": policy.max_file_size + 1})
        with pytest.raises(InvalidFile):
            await manager.create_upload_session(file)

    async def test_roles_are_enforced(self, manager):
        file, data = make_file(10)
        code, sender = await manager.create_upload_session(file)
        _, receiver = await manager.join_as_receiver(code)

        with pytest.raises(InvalidRole):
            await manager.push_chunk(receiver, data)
        with pytest.raises(InvalidRole):
            manager.receive(sender)

    async def test_unknown_token(self, manager):
        with pytest.raises(SessionNotFound):
            manager.resolve("missing")

    async def test_each_role_gets_its_own_token(self, manager):
        file, _ = make_file(10)
        code, sender = await manager.create_upload_session(file)
        _, receiver = await manager.join_as_receiver(code)

        assert sender.token != receiver.token
        assert sender.session_id == receiver.session_id
        assert manager.resolve(sender.token) == sender
        assert manager.resolve(receiver.token).role is Role.RECEIVER

    async def test_forged_handle_rejected(self, manager):
        file, data = make_file(10)
        code, _ = await manager.create_upload_session(file)
        _, receiver = await manager.join_as_receiver(code)
        forged = receiver.model_copy(update={"role": Role.SENDER})

        with pytest.raises(SessionNotFound):
            await manager.push_chunk(forged, data)
        with pytest.raises(SessionNotFound):
            await manager.cancel(forged)
        assert manager.get_status(receiver).state is SessionState.PENDING

    async def test_injected_registry_is_used(self, transport, policy, clock):
        registry = CodeRegistry(generator=lambda: "WXYZ23")
        manager = SessionManager(transport=transport, policy=policy, registry=registry, clock=clock)
        assert manager.registry is registry

        code, _ = await manager.create_upload_session(make_file(10)[0])
        assert code == "WXYZ23"
        assert code in registry

    async def test_cancel_from_receiver_visible_to_sender(self, manager):
        file, _ = make_file(10)
        code, sender = await manager.create_upload_session(file)
        _, receiver = await manager.join_as_receiver(code)

        await manager.cancel(receiver)
        status = manager.get_status(sender)
        assert status.state is SessionState.CANCELLED
        assert status.error_message == "Cancelled by receiver"

        # Cancelling again changes nothing
        assert (await manager.cancel(sender)).error_message == "Cancelled by receiver"

    async def test_events_are_emitted(self, manager):
        events = []

        async def on_event(event_type, data):
            events.append((event_type, data["state"]))

        manager.on_event(on_event)
        file, data = make_file(10)
        code, sender = await manager.create_upload_session(file)
        _, receiver = await manager.join_as_receiver(code)
        await manager.push_chunk(sender, data)
        assert events[-1] != ("session_state", "completed")

        await download(manager, receiver)
        assert events[0] == ("session_state", "pending")
        assert events[-1] == ("session_state", "completed")


class TestReaper:
    """Test expiry and purging"""

    async def test_idle_session_expires_and_code_is_reclaimed(self, manager, policy, clock):
        file, data = make_file(100)
        code, sender = await manager.create_upload_session(file)
        await manager.join_as_receiver(code)
        await manager.push_chunk(sender, data[:10])

        clock.advance(policy.idle_timeout)
        assert await manager.reap() == (1, 0)
        assert manager.get_status(sender).state is SessionState.EXPIRED
        assert manager.get_status(sender).bytes_transferred == 10

        # Code stays reserved during the grace period
        with pytest.raises(CodeExpired):
            await manager.join_as_receiver(code)
        assert code in manager.registry

        clock.advance(policy.grace_period)
        assert await manager.reap() == (0, 1)
        assert code not in manager.registry
        with pytest.raises(SessionNotFound):
            manager.get_status(sender)
        with pytest.raises(CodeNotFound):
            await manager.join_as_receiver(code)

    async def test_join_timeout(self, manager, policy, clock):
        file, _ = make_file(100)
        code, sender = await manager.create_upload_session(file)

        clock.advance(policy.join_timeout)
        await manager.reap()
        assert manager.get_status(sender).state is SessionState.EXPIRED
        assert "No receiver joined" in manager.get_status(sender).error_message

    async def test_expired_code_becomes_allocatable(self, transport, policy, clock):
        registry = CodeRegistry(generator=lambda: "SAME22", max_attempts=2)
        manager = SessionManager(transport=transport, policy=policy, registry=registry, clock=clock)

        code, _ = await manager.create_upload_session(make_file(10)[0])
        with pytest.raises(CapacityExhausted):
            await manager.create_upload_session(make_file(10)[0])

        clock.advance(policy.join_timeout)
        await manager.reap()
        clock.advance(policy.grace_period)
        await manager.reap()

        assert (await manager.create_upload_session(make_file(10)[0]))[0] == code

    async def test_background_reaper(self, manager, policy, clock):
        file, _ = make_file(100)
        _, sender = await manager.create_upload_session(file)
        await manager.start()
        try:
            clock.advance(policy.join_timeout)
            for _ in range(100):
                await asyncio.sleep(policy.reap_interval)
                if manager.get_status(sender).state is SessionState.EXPIRED:
                    break
            assert manager.get_status(sender).state is SessionState.EXPIRED
        finally:
            await manager.stop()

    async def test_stop_cancels_live_sessions(self, manager):
        file, _ = make_file(100)
        code, sender = await manager.create_upload_session(file)
        session = manager.session(sender)
        await manager.start()
        await manager.stop()

        assert session.state is SessionState.CANCELLED
        assert manager.list_sessions() == []
        assert code not in manager.registry
