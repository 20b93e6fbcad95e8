"""
Large-scale reconstruction engine.

Fuses a stream of depth frames into a set of submaps, tracks the camera
against the active submap and keeps the submap poses consistent with a
periodically optimized pose graph.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import torch
from tqdm import tqdm

from .config import FusionParams
from .core.errors import ResourceExhausted, TrackingLost
from .posegraph import PoseGraphOptimizer, PoseGraphWorker
from .rendering.shading import shade_surface
from .submaps import Submap, SubmapManager
from .tracking import ICPTracker, MotionModel
from .types import (
    EngineStatistics,
    Frame,
    FrameStatus,
    IntegrationReport,
    OptimizationResult,
    SubmapTransition,
    TrackingResult,
)
from .utils.transforms import pose_inverse, relative_pose, translation_distance

logger = logging.getLogger(__name__)

DepthInput = Union[torch.Tensor, np.ndarray]


class ReconstructionEngine:
    """
    Submap-based TSDF fusion with pose graph correction.

    Pipeline per frame:
    1. Convert raw depth to meters, drop far measurements
    2. Track the camera against the active submap (other active submaps
       are tried if that fails)
    3. Measure submap visibility and integrate into the visible submaps
    4. Retire faded submaps, spawn a new one when the active one fades
    5. Optimize the pose graph on schedule and apply corrected poses

    Example:
        >>> engine = ReconstructionEngine(FusionParams.coarse_params())
        >>> for depth in depth_frames:
        ...     engine.update(depth)
        >>> points, normals = engine.get_cloud()
    """

    def __init__(self, params: FusionParams, device: Optional[torch.device] = None):
        """
        Args:
            params: Complete reconstruction configuration
            device: Device for computation (default from params)
        """
        self.params = params
        self.device = device or params.get_device()
        self.intrinsics = params.camera

        # Components
        self.manager = SubmapManager(params.submap, params.volume, self.device)
        self.tracker = ICPTracker(params.tracker, params.camera, self.device)
        self.motion_model = MotionModel()
        self.pose_graph = PoseGraphOptimizer(params.pose_graph)

        self.worker: Optional[PoseGraphWorker] = None
        if params.pose_graph.background:
            self.worker = PoseGraphWorker(
                max_iterations=params.pose_graph.max_iterations,
                tolerance=params.pose_graph.tolerance
            )
            self.worker.start()

        self._init_state()

    def _init_state(self):
        self._pose = torch.eye(4, device=self.device)
        self._last_integrated_pose: Optional[torch.Tensor] = None
        self._handoff_parents: Dict[int, int] = {}
        # (submap id, camera pose in that submap) per successful frame
        self._trajectory: List[Tuple[int, torch.Tensor]] = []
        self.frame_count = 0
        self.is_initialized = False
        self.last_status: Optional[FrameStatus] = None
        self.last_tracking: Optional[TrackingResult] = None
        self._stats = EngineStatistics()

    # -------------------------------------------------------------------------
    # Frame processing
    # -------------------------------------------------------------------------

    def _prepare_depth(self, depth: DepthInput) -> torch.Tensor:
        """Raw depth -> (H, W) float meters with invalid values zeroed."""
        depth = torch.as_tensor(np.asarray(depth) if not isinstance(depth, torch.Tensor) else depth)
        if depth.dim() == 3 and depth.shape[-1] == 1:
            depth = depth[..., 0]
        if tuple(depth.shape) != self.intrinsics.size:
            raise ValueError(
                f"Depth shape {tuple(depth.shape)} does not match camera {self.intrinsics.size}"
            )

        depth = depth.to(device=self.device, dtype=torch.float32) / self.intrinsics.depth_factor
        invalid = ~torch.isfinite(depth) | (depth < 0)
        if self.params.truncate_threshold > 0:
            invalid = invalid | (depth > self.params.truncate_threshold)
        return torch.where(invalid, torch.zeros_like(depth), depth)

    def update(self, depth: DepthInput, color: Optional[DepthInput] = None) -> bool:
        """
        Process one depth frame.

        Args:
            depth: (H, W) raw depth, divided by camera.depth_factor
            color: Optional (H, W, 3) color image, carried along with the frame

        Returns:
            True if the frame was tracked and integrated. False if tracking
            was lost (state unchanged) or integration could not recover from
            an exhausted volume.
        """
        depth = self._prepare_depth(depth)
        if color is not None:
            color = torch.as_tensor(color).to(self.device)
        frame = Frame(depth=depth, intrinsics=self.intrinsics, frame_id=self.frame_count, color=color)

        self._apply_background_result()

        if not self.is_initialized:
            ok = self._initialize(frame)
        else:
            ok = self._process(frame)

        self.frame_count += 1
        self._stats.total_frames += 1
        return ok

    def _initialize(self, frame: Frame) -> bool:
        """First frame: submap 0 at the identity pose."""
        identity = torch.eye(4, device=self.device)
        submap = self.manager.create_submap(identity, frame.frame_id)
        try:
            submap.integrate(frame.depth, identity, frame.intrinsics)
        except ResourceExhausted as e:
            logger.warning("First frame does not fit into one submap: %s", e)
            self.manager.reset()
            self._set_status(FrameStatus.RESOURCE_EXHAUSTED)
            return False

        self.pose_graph.add_node(submap.id, submap.pose)
        self._pose = identity
        self._last_integrated_pose = identity.clone()
        self.motion_model.update(identity)
        self._record_pose(submap.id, identity)

        self.is_initialized = True
        self._stats.tracked_frames += 1
        self._set_status(FrameStatus.INITIALIZED)
        logger.info("Initialized reconstruction at frame %d", frame.frame_id)
        return True

    def _track(self, frame: Frame) -> Tuple[TrackingResult, Submap]:
        """Track against the target, falling back to the other active submaps."""
        predicted = self.motion_model.predict().to(device=self.device, dtype=torch.float32)

        target = self.manager.target
        others = sorted(
            (s for s in self.manager.active_submaps() if s.id != target.id),
            key=lambda s: s.visibility_ratio,
            reverse=True
        )

        error: Optional[TrackingLost] = None
        for submap in [target] + others:
            try:
                return self.tracker.track(frame, submap, predicted, self._pose), submap
            except TrackingLost as e:
                logger.debug("Tracking against submap %d failed: %s", submap.id, e)
                error = e
        raise error

    def _process(self, frame: Frame) -> bool:
        try:
            result, reference = self._track(frame)
        except TrackingLost as e:
            logger.warning("Tracking lost at frame %d: %s", frame.frame_id, e)
            self._stats.lost_frames += 1
            self._set_status(FrameStatus.TRACKING_LOST)
            return False

        if reference.id != self.manager.active_id:
            logger.info("Relocalized against submap %d", reference.id)
            self.manager.set_target(reference.id)

        pose = result.pose.to(self.device)
        self.last_tracking = result
        self._pose = pose
        self.motion_model.update(pose)

        self.manager.update_visibility(pose, frame.intrinsics)

        if self._should_integrate(pose):
            report = self.manager.integrate(frame, pose)
            if report.exhausted and not self._recover_exhausted(frame, pose, report):
                self._record_pose(self.manager.active_id, pose)
                self._stats.exhausted_frames += 1
                self._set_status(FrameStatus.RESOURCE_EXHAUSTED)
                return False
            self._last_integrated_pose = pose.clone()

        transition = self.manager.manage(frame, pose, tracking_healthy=True)
        if transition.spawned is not None:
            self._register_spawn(transition)

        self._refine_handoff(frame, result, reference)
        self._record_pose(self.manager.active_id, pose)
        self._maybe_optimize(frame.frame_id)

        self._stats.tracked_frames += 1
        self._set_status(FrameStatus.TRACKED)
        return True

    def _should_integrate(self, pose: torch.Tensor) -> bool:
        if self._last_integrated_pose is None or self.params.min_camera_movement <= 0:
            return True
        return translation_distance(pose, self._last_integrated_pose) >= self.params.min_camera_movement

    def _recover_exhausted(self, frame: Frame, pose: torch.Tensor, report: IntegrationReport) -> bool:
        """
        Retire exhausted submaps, replacing an exhausted target with a fresh one.

        The target is only retired once a replacement seeded with this frame
        exists. If the frame does not fit a fresh submap either, the target
        stays active and the frame is rejected.
        """
        target_id = self.manager.active_id
        for submap_id in report.exhausted:
            if submap_id != target_id:
                self.manager.retire(submap_id)
        if target_id not in report.exhausted:
            return True

        try:
            transition = self.manager.force_spawn(frame, pose)
        except ResourceExhausted as e:
            logger.warning("Could not spawn a replacement for submap %d: %s", target_id, e)
            return False
        self.manager.retire(target_id)
        transition.retired.append(target_id)
        self._register_spawn(transition)
        return True

    def _register_spawn(self, transition: SubmapTransition):
        submap = transition.spawned
        self.pose_graph.add_node(submap.id, submap.pose)
        if transition.parent_id is not None:
            parent = self.manager.get(transition.parent_id)
            self.pose_graph.add_edge(parent.id, submap.id, relative_pose(parent.pose, submap.pose))
            self._handoff_parents[submap.id] = parent.id

    def _refine_handoff(self, frame: Frame, result: TrackingResult, reference: Submap):
        """
        Re-measure the spawn edge while the camera still sees the parent submap.

        The camera tracked in both submaps gives
        Z = inv(P_a) @ T_a @ inv(T_b) @ P_b.
        """
        if not self.params.submap.refine_handoff_edges:
            return
        parent_id = self._handoff_parents.get(reference.id)
        if parent_id is None or frame.frame_id <= reference.created_at_frame:
            return
        parent = self.manager.get(parent_id)
        if not parent.is_active:
            return

        try:
            in_parent = self.tracker.track(frame, parent, result.pose, result.pose)
        except TrackingLost as e:
            logger.debug("Handoff refinement skipped: %s", e)
            return

        T_a = in_parent.pose.to(torch.float64)
        T_b = result.pose.to(torch.float64)
        P_a = parent.pose.to(torch.float64)
        P_b = reference.pose.to(torch.float64)
        measured = pose_inverse(P_a) @ T_a @ pose_inverse(T_b) @ P_b
        self.pose_graph.refine_edge(parent_id, reference.id, measured)

    def _record_pose(self, submap_id: int, pose: torch.Tensor):
        submap = self.manager.get(submap_id)
        self._trajectory.append((submap_id, submap.to_local(pose)))

    def _set_status(self, status: FrameStatus):
        self.last_status = status

    # -------------------------------------------------------------------------
    # Pose graph
    # -------------------------------------------------------------------------

    def _maybe_optimize(self, frame_id: int):
        if not self.pose_graph.should_optimize(frame_id):
            return
        if self.worker is not None:
            if self.worker.is_busy:
                return
            self.pose_graph.mark_submitted(frame_id)
            self.worker.submit(self.pose_graph.graph.snapshot(), self.pose_graph.anchor_id)
        else:
            self._apply_result(self.pose_graph.optimize(frame_id))

    def _apply_background_result(self):
        if self.worker is None:
            return
        result = self.worker.poll()
        if result is not None:
            self._apply_result(self.pose_graph.commit(result))

    def _apply_result(self, result: OptimizationResult):
        """Swap in corrected submap poses and move the camera with its submap."""
        self._stats.num_optimizations += 1
        if not result.success:
            self._stats.failed_optimizations += 1
            return

        poses = {
            k: v.to(device=self.device, dtype=torch.float32)
            for k, v in result.poses.items() if k in self.manager
        }
        target = self.manager.target
        old_target_pose = target.pose.clone() if target is not None else None

        self.manager.apply_poses(poses)

        if target is not None:
            correction = target.pose @ pose_inverse(old_target_pose)
            self._pose = correction @ self._pose
            if self._last_integrated_pose is not None:
                self._last_integrated_pose = correction @ self._last_integrated_pose
            self.motion_model.apply_correction(correction)

    def optimize_pose_graph(self) -> OptimizationResult:
        """Optimize the pose graph now and apply the result."""
        self._apply_background_result()
        result = self.pose_graph.optimize(self.frame_count)
        self._apply_result(result)
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def render(
        self,
        camera_pose: Optional[torch.Tensor] = None,
        output_size: Optional[Tuple[int, int]] = None
    ) -> torch.Tensor:
        """
        Phong-shaded preview of the active submap.

        Args:
            camera_pose: Camera-to-world pose (default: current pose)
            output_size: (H, W) of the image (default: camera size)

        Returns:
            (H, W, 3) uint8 image
        """
        pose = self._pose if camera_pose is None else torch.as_tensor(camera_pose).to(self.device, torch.float32)
        intrinsics = self.intrinsics
        if output_size is not None and tuple(output_size) != intrinsics.size:
            intrinsics = intrinsics.scaled(output_size[1] / intrinsics.width)
        size = tuple(output_size) if output_size is not None else intrinsics.size

        target = self.manager.target
        if target is None:
            return torch.zeros(size + (3,), dtype=torch.uint8, device=self.device)

        surface = target.raycast(pose, intrinsics, size)
        light = torch.tensor(self.params.light_pose, dtype=torch.float32, device=self.device)
        return shade_surface(surface, pose[:3, 3], light)

    def get_cloud(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Surface points and normals (N, 3) of all submaps in the global frame."""
        points, normals = [], []
        for submap in self.manager:
            p, n = submap.fetch_points_normals().to_tensors()
            points.append(p.to(self.device))
            normals.append(n.to(self.device))
        if not points:
            empty = torch.empty(0, 3, device=self.device)
            return empty, empty.clone()
        return torch.cat(points, dim=0), torch.cat(normals, dim=0)

    def get_points(self) -> torch.Tensor:
        return self.get_cloud()[0]

    def get_normals(self, points: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        Normals of the reconstruction.

        Without arguments, the normals matching get_points(). Given global
        points (N, 3), the normal of the first submap containing each point
        (active target first); NaN where no submap covers a point.
        """
        if points is None:
            return self.get_cloud()[1]

        points = torch.as_tensor(points).to(device=self.device, dtype=torch.float32)
        normals = torch.full_like(points, float('nan'))
        pending = torch.ones(points.shape[0], dtype=torch.bool, device=self.device)

        order = list(self.manager)
        target = self.manager.target
        if target is not None:
            order = [target] + [s for s in order if s.id != target.id]

        for submap in order:
            if not pending.any():
                break
            idx = pending.nonzero(as_tuple=True)[0]
            inside = submap.contains(points[idx])
            if not inside.any():
                continue
            sel = idx[inside]
            normals[sel] = submap.compute_normals(points[sel]).to(normals.dtype)
            pending[sel] = False
        return normals

    def get_pose(self) -> torch.Tensor:
        """Current camera-to-world pose (4, 4)."""
        return self._pose.clone()

    def get_trajectory(self) -> List[torch.Tensor]:
        """Camera poses of all successful frames, expressed with current submap poses."""
        return [self.manager.get(sid).pose @ local for sid, local in self._trajectory]

    def get_submap(self, submap_id: int) -> Submap:
        return self.manager.get(submap_id)

    @property
    def submaps(self) -> List[Submap]:
        return list(self.manager)

    def get_statistics(self) -> EngineStatistics:
        stats = EngineStatistics(**vars(self._stats))
        stats.num_submaps = len(self.manager)
        stats.num_active_submaps = len(self.manager.active_submaps())
        stats.num_edges = self.pose_graph.graph.num_edges()
        return stats

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self):
        """Discard all submaps, poses and statistics."""
        if self.worker is not None:
            self.worker.wait(timeout=5.0 if self.worker.is_busy else 0.0)
            self.worker.poll()
        self.manager.reset()
        self.pose_graph.reset()
        self.motion_model.reset()
        self._init_state()

    def run(
        self,
        frames: Iterable,
        max_frames: Optional[int] = None,
        progress: bool = False
    ) -> EngineStatistics:
        """
        Process a sequence of frames.

        Args:
            frames: Depth images, or dicts with a 'depth' (and optional 'color') entry
            max_frames: Optional maximum frames to process
            progress: Show a progress bar

        Returns:
            Statistics after the run
        """
        pbar = tqdm(frames, total=max_frames, desc='Fusion', disable=not progress)
        for i, item in enumerate(pbar):
            if max_frames is not None and i >= max_frames:
                break
            if isinstance(item, dict):
                self.update(item['depth'], item.get('color'))
            else:
                self.update(item)
            pbar.set_postfix({
                'submaps': len(self.manager),
                'status': self.last_status.value if self.last_status else '-',
            })
        pbar.close()
        return self.get_statistics()

    def close(self):
        """Stop the background optimizer, if any."""
        if self.worker is not None:
            self.worker.stop()

    def __enter__(self) -> 'ReconstructionEngine':
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def __repr__(self) -> str:
        return (
            f"ReconstructionEngine(frames={self.frame_count}, submaps={len(self.manager)}, "
            f"active={self.manager.active_id})"
        )
