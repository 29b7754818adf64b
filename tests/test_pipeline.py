"""重压缩流水线测试。

用带闸门的编解码器模拟慢速和乱序完成。
"""

import asyncio

import pytest

from py_image_batch_compress.core.metadata import MetadataExtractor
from py_image_batch_compress.engine.pipeline import resolve_target_dimensions
from py_image_batch_compress.exceptions import (
    BatchClosedError,
    ExportError,
    RecordNotFoundError,
    ValidationError,
)
from py_image_batch_compress.models.constants import OutputFormat
from py_image_batch_compress.models.image_record import RecordStatus
from tests.conftest import TEST_WINDOW, decoded_format, decoded_size, run, wait_for


class TestDimensionResolution:
    """目标尺寸推断测试"""

    @pytest.mark.parametrize(
        "source,target,expected",
        [
            ((500, 500), (200, None), (200, 200)),
            ((1000, 800), (200, None), (200, 160)),
            ((1000, 800), (None, 200), (250, 200)),
            ((1000, 800), (300, 300), (300, 300)),
            ((1000, 800), (None, None), (None, None)),
            ((3000, 2), (10, None), (10, 1)),
        ],
    )
    def test_resolve(self, source, target, expected):
        assert resolve_target_dimensions(*source, *target) == expected


class TestSeeding:
    """上传与首次压缩测试"""

    def test_seed_compresses_at_full_quality(self, make_pipeline, square_png):
        """测试首次压缩使用满质量和当前批次参数"""

        async def scenario():
            async with make_pipeline() as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()
                return pipeline.get_record(key)

        record = run(scenario())

        assert record.key == "a.png"
        assert (record.width, record.height) == (500, 500)
        assert record.status == RecordStatus.READY
        assert record.quality == 1.0
        assert record.processed_params.output_format == OutputFormat.WEBP
        assert decoded_format(record.processed_blob) == "WEBP"
        assert record.processed_size == len(record.processed_blob)

    def test_load_keeps_upload_order(self, make_pipeline, square_png, landscape_jpg):
        """测试批量装载保持上传顺序并替换旧批次"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("old.png", square_png)])
                keys = await pipeline.load(
                    [("b.jpg", landscape_jpg), ("a.png", square_png), ("b.jpg", square_png)]
                )
                await pipeline.wait_idle()
                return keys, pipeline.snapshot()

        keys, records = run(scenario())

        assert keys == ["b.jpg", "a.png", "b.jpg#2"]
        assert [r.key for r in records] == keys
        assert all(r.status == RecordStatus.READY for r in records)

    def test_undecodable_upload(self, make_pipeline, corrupt_bytes, square_png):
        """测试无法解码的图片不会影响其他图片"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("bad.png", corrupt_bytes), ("a.png", square_png)])
                await pipeline.wait_idle()
                return pipeline.snapshot()

        bad, good = run(scenario())

        assert bad.status == RecordStatus.FAILED
        assert bad.error
        assert bad.processed_blob is None
        assert all(value == "" for value in bad.metadata.values())
        assert good.status == RecordStatus.READY

    def test_override_set_while_reading(self, make_pipeline, gated_codec, square_png):
        """测试读取尺寸期间设置的显式质量不会被首次压缩覆盖"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                seeding = asyncio.ensure_future(pipeline.seed("a.png", square_png))
                await asyncio.sleep(0)
                pipeline.set_item_quality("a.png", 0.2)
                key = await seeding
                await pipeline.wait_idle()
                return pipeline.get_record(key)

        record = run(scenario())

        assert record.status == RecordStatus.READY
        assert record.quality_override == 0.2
        assert record.processed_params.quality == 0.2
        assert 1.0 not in gated_codec.qualities()

    def test_seed_reads_metadata(self, make_pipeline, codec, square_png):
        """测试上传时读取元数据"""
        exif = MetadataExtractor().build_exif({"title": "标题", "rating": "3"})
        blob = codec.transcode(square_png, None, None, "jpeg", 0.9, exif=exif)

        async def scenario():
            async with make_pipeline() as pipeline:
                key = await pipeline.seed("tagged.jpg", blob)
                return pipeline.get_record(key)

        record = run(scenario())
        assert record.metadata["title"] == "标题"
        assert record.metadata["rating"] == "3"


class TestRecompression:
    """重压缩请求测试"""

    def test_requests_are_coalesced(self, make_pipeline, gated_codec, square_png):
        """测试窗口内的多次请求只执行最后一次"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()
                gated_codec.reset()

                pipeline.request_recompression(key, 0.1)
                pipeline.request_recompression(key, 0.2)
                assert pipeline.get_record(key).status == RecordStatus.PENDING
                await asyncio.sleep(TEST_WINDOW * 4)
                await pipeline.wait_idle()
                return pipeline.get_record(key)

        record = run(scenario())

        assert gated_codec.qualities() == [0.2]
        assert record.processed_params.quality == 0.2
        assert record.status == RecordStatus.READY

    def test_never_left_processing(self, make_pipeline, square_png, landscape_jpg):
        """测试请求完成后状态总是 Ready 或 Failed"""

        async def scenario():
            async with make_pipeline() as pipeline:
                keys = await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                for quality in (0.9, 0.5, 0.1):
                    for key in keys:
                        pipeline.request_recompression(key, quality)
                await pipeline.wait_idle()
                return pipeline.snapshot()

        records = run(scenario())
        assert all(r.status in (RecordStatus.READY, RecordStatus.FAILED) for r in records)
        assert all(r.processed_params.quality == 0.1 for r in records)

    def test_outdated_completion_is_discarded(self, make_pipeline, gated_codec, square_png):
        """测试先请求后完成的结果不会覆盖更新的请求"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()

                slow = gated_codec.gate(0.2)
                pipeline.request_recompression(key, 0.2, immediate=True)
                await wait_for(lambda: gated_codec.started(0.2))

                pipeline.request_recompression(key, 0.8, immediate=True)
                await wait_for(
                    lambda: pipeline.get_record(key).status == RecordStatus.READY
                )
                newer = pipeline.get_record(key)

                slow.set()
                await wait_for(lambda: 0.2 in gated_codec.finished)
                await pipeline.wait_idle()
                return newer, pipeline.get_record(key)

        newer, final = run(scenario())

        assert newer.processed_params.quality == 0.8
        assert final.processed_params.quality == 0.8
        assert final.processed_blob == newer.processed_blob
        assert final.request_seq == newer.request_seq

    def test_failure_keeps_previous_artifact(self, make_pipeline, gated_codec, square_png):
        """测试失败时保留上一次的产物"""
        gated_codec.fail_qualities.add(0.4)

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()
                before = pipeline.get_record(key)

                pipeline.request_recompression(key, 0.4)
                await pipeline.wait_idle()
                failed = pipeline.get_record(key)

                pipeline.request_recompression(key, 0.6)
                await pipeline.wait_idle()
                return before, failed, pipeline.get_record(key)

        before, failed, recovered = run(scenario())

        assert failed.status == RecordStatus.FAILED
        assert "0.4" in failed.error
        assert failed.processed_blob == before.processed_blob
        assert recovered.status == RecordStatus.READY
        assert recovered.error is None

    def test_invalid_requests(self, make_pipeline, square_png):
        """测试调用方参数错误同步抛出"""

        async def scenario():
            async with make_pipeline() as pipeline:
                key = await pipeline.seed("a.png", square_png)
                with pytest.raises(ValidationError):
                    pipeline.request_recompression(key, 1.5)
                with pytest.raises(ValidationError):
                    pipeline.request_recompression(key, 0.5, 0, None)
                with pytest.raises(ValidationError):
                    pipeline.set_target_size(0, None)
                with pytest.raises(ValidationError):
                    pipeline.set_output_format("gif")
                with pytest.raises(ValidationError):
                    pipeline.set_metadata_field(key, "camera", "x")
                with pytest.raises(RecordNotFoundError):
                    pipeline.request_recompression("missing.png", 0.5)

        run(scenario())


class TestBatchParameters:
    """批次参数变更测试"""

    def test_width_only_keeps_aspect_ratio(self, make_pipeline, square_png, landscape_jpg):
        """测试只设置宽度时每张图片按自身宽高比缩放"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                pipeline.set_target_size(200, None)
                await pipeline.wait_idle()
                return pipeline.snapshot()

        a, b = run(scenario())

        assert decoded_size(a.processed_blob) == (200, 200)
        assert decoded_size(b.processed_blob) == (200, 160)
        assert a.status == b.status == RecordStatus.READY

    def test_format_change_reaches_overrides(
        self, make_pipeline, gated_codec, square_png, landscape_jpg
    ):
        """测试格式变化重新压缩全部图片，尺寸变化跳过显式质量的图片"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                pipeline.set_item_quality("b.jpg", 0.3)
                await pipeline.wait_idle()

                resized = pipeline.set_target_size(300, None)
                await pipeline.wait_idle()
                b_after_resize = pipeline.get_record("b.jpg")

                reformatted = pipeline.set_output_format("jpeg")
                await pipeline.wait_idle()
                return resized, b_after_resize, reformatted, pipeline.snapshot()

        resized, b_after_resize, reformatted, (a, b) = run(scenario())

        assert resized == ["a.png"]
        assert decoded_size(b_after_resize.processed_blob) == (1000, 800)
        assert reformatted == ["a.png", "b.jpg"]
        assert decoded_format(a.processed_blob) == "JPEG"
        assert decoded_format(b.processed_blob) == "JPEG"
        assert b.processed_params.quality == 0.3
        assert a.processed_params.quality == 1.0

    def test_global_quality_skips_overrides(self, make_pipeline, square_png, landscape_jpg):
        """测试全局质量只影响没有显式质量的图片"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                pipeline.set_item_quality("b.jpg", 0.3)
                requested = pipeline.set_global_quality(0.5)
                await pipeline.wait_idle()
                return requested, pipeline.snapshot()

        requested, (a, b) = run(scenario())

        assert requested == ["a.png"]
        assert a.processed_params.quality == 0.5
        assert b.processed_params.quality == 0.3

    def test_clear_override_falls_back_to_global(self, make_pipeline, square_png):
        """测试取消显式质量后回到全局质量"""

        async def scenario():
            async with make_pipeline() as pipeline:
                key = await pipeline.seed("a.png", square_png)
                pipeline.set_global_quality(0.7)
                pipeline.set_item_quality(key, 0.2)
                await pipeline.wait_idle()
                overridden = pipeline.get_record(key)
                pipeline.clear_item_quality(key)
                await pipeline.wait_idle()
                return overridden, pipeline.get_record(key)

        overridden, reset = run(scenario())

        assert overridden.processed_params.quality == 0.2
        assert reset.quality_override is None
        assert reset.processed_params.quality == 0.7

    def test_unchanged_parameters_do_nothing(self, make_pipeline, square_png):
        """测试参数未变化时不重新压缩"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.seed("a.png", square_png)
                return pipeline.set_output_format("webp"), pipeline.set_target_size(None, None)

        assert run(scenario()) == ([], [])


class TestClear:
    """清除批次测试"""

    def test_clear_mid_compression(self, make_pipeline, gated_codec, square_png):
        """测试清除后迟到的结果不会写入"""
        changes = []

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()

                slow = gated_codec.gate(0.5)
                pipeline.request_recompression(key, 0.5, immediate=True)
                pipeline.request_recompression(key, 0.6)
                await wait_for(lambda: gated_codec.started(0.5))

                assert pipeline.clear() == 1
                pipeline.subscribe(changes.append)
                slow.set()
                await wait_for(lambda: 0.5 in gated_codec.finished)
                await asyncio.sleep(TEST_WINDOW * 4)
                await pipeline.wait_idle()
                return len(pipeline.store)

        assert run(scenario()) == 0
        assert changes == []
        assert 0.6 not in gated_codec.qualities()

    def test_late_result_does_not_reach_new_batch(
        self, make_pipeline, gated_codec, square_png, landscape_jpg
    ):
        """测试旧批次的结果不会写入同名的新记录"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()

                slow = gated_codec.gate(0.5)
                pipeline.request_recompression("a.png", 0.5, immediate=True)
                await wait_for(lambda: gated_codec.started(0.5))

                await pipeline.load([("a.png", landscape_jpg)])
                await pipeline.wait_idle()
                fresh = pipeline.get_record("a.png")

                slow.set()
                await wait_for(lambda: 0.5 in gated_codec.finished)
                await asyncio.sleep(0.05)
                return fresh, pipeline.get_record("a.png")

        fresh, final = run(scenario())

        assert final.processed_params.quality == 1.0
        assert final.processed_blob == fresh.processed_blob
        assert (final.width, final.height) == (1000, 800)

    def test_closed_pipeline_rejects_requests(self, make_pipeline, square_png):
        """测试关闭后拒绝请求"""

        async def scenario():
            pipeline = make_pipeline()
            await pipeline.seed("a.png", square_png)
            await pipeline.aclose()
            with pytest.raises(BatchClosedError):
                await pipeline.seed("b.png", square_png)
            with pytest.raises(BatchClosedError):
                pipeline.set_item_quality("a.png", 0.5)

        run(scenario())


class TestEditsAndExport:
    """用户编辑与导出测试"""

    def test_metadata_edit_does_not_recompress(self, make_pipeline, gated_codec, square_png):
        """测试编辑元数据不触发压缩，导出时按新元数据重新编码"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()
                gated_codec.reset()

                edited = pipeline.set_metadata_field(key, "title", "新标题")
                pipeline.set_rename_target(key, "cover")
                assert not pipeline.is_busy(key)
                assert pipeline.is_stale(pipeline.get_record(key))
                calls_before_export = len(gated_codec.calls)

                artifact = await pipeline.export_single(key)
                return edited, calls_before_export, artifact

        edited, calls_before_export, artifact = run(scenario())

        assert edited.status == RecordStatus.READY
        assert calls_before_export == 0
        assert len(gated_codec.calls) == 1
        assert artifact.filename == "cover.webp"
        assert artifact.mime_type == "image/webp"
        assert not artifact.stale
        assert MetadataExtractor().extract(artifact.data)["title"] == "新标题"

    def test_export_keeps_requested_parameters(self, make_pipeline, gated_codec, square_png):
        """测试导出沿用最近一次请求的质量和尺寸"""

        async def scenario():
            async with make_pipeline(codec=gated_codec) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                pipeline.set_output_format("jpeg")
                pipeline.request_recompression(key, 0.1, 100, 100)
                await pipeline.wait_idle()
                before = pipeline.get_record(key)
                calls = len(gated_codec.calls)

                artifact = await pipeline.export_single(key)
                return before, calls, artifact, pipeline.get_record(key)

        before, calls, artifact, after = run(scenario())

        assert not artifact.stale
        assert len(gated_codec.calls) == calls
        assert artifact.data == before.processed_blob
        assert decoded_size(artifact.data) == (100, 100)
        assert after.processed_params.quality == 0.1
        assert (after.processed_params.width, after.processed_params.height) == (100, 100)

    def test_export_keeps_override_size(self, make_pipeline, square_png, landscape_jpg):
        """测试尺寸变化跳过的显式质量图片在导出时保持原尺寸"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                pipeline.set_item_quality("b.jpg", 0.3)
                await pipeline.wait_idle()
                pipeline.set_target_size(300, None)
                archive = await pipeline.export_batch()
                return archive, pipeline.snapshot()

        archive, (a, b) = run(scenario())

        assert not archive.stale
        assert decoded_size(a.processed_blob) == (300, 300)
        assert decoded_size(b.processed_blob) == (1000, 800)
        assert b.processed_params.quality == 0.3

    def test_export_waits_for_pending_work(self, make_pipeline, square_png, landscape_jpg):
        """测试导出前等待防抖窗口和执行中的任务"""

        async def scenario():
            async with make_pipeline(debounce_window=10) as pipeline:
                await pipeline.load([("a.png", square_png), ("b.jpg", landscape_jpg)])
                pipeline.set_output_format("png")
                archive = await pipeline.export_batch()
                return archive, pipeline.snapshot()

        archive, records = run(scenario())

        assert not archive.stale
        assert [entry.filename for entry in archive.entries] == ["a.png", "b.png"]
        assert all(r.processed_params.output_format == OutputFormat.PNG for r in records)

    def test_export_without_waiting_is_flagged(self, make_pipeline, square_png):
        """测试不等待时导出最新可用产物并标记为过期"""

        async def scenario():
            async with make_pipeline(debounce_window=10) as pipeline:
                key = await pipeline.seed("a.png", square_png)
                await pipeline.wait_idle()
                pipeline.request_recompression(key, 0.3)
                artifact = await pipeline.export_single(key, wait=False)
                archive = await pipeline.export_batch(wait=False)
                return artifact, archive

        artifact, archive = run(scenario())

        assert artifact.stale
        assert archive.stale
        assert artifact.filename == "a.webp"

    def test_export_skips_records_without_artifact(
        self, make_pipeline, corrupt_bytes, square_png
    ):
        """测试没有产物的记录被跳过"""

        async def scenario():
            async with make_pipeline() as pipeline:
                await pipeline.load([("bad.png", corrupt_bytes), ("a.png", square_png)])
                archive = await pipeline.export_batch()
                with pytest.raises(ExportError):
                    await pipeline.export_single("bad.png")
                return archive

        archive = run(scenario())

        assert archive.skipped_keys == ["bad.png"]
        assert [entry.key for entry in archive.entries] == ["a.png"]

    def test_export_unknown_key(self, make_pipeline):
        """测试导出不存在的记录"""

        async def scenario():
            async with make_pipeline() as pipeline:
                with pytest.raises(RecordNotFoundError):
                    await pipeline.export_batch(["missing.png"])

        run(scenario())
