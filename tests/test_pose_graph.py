"""
Tests for the submap pose graph.

Tests cover:
- Graph container (nodes, edges, refinement, snapshots)
- Levenberg-Marquardt solver (anchoring, loop consistency, failure)
- Optimization scheduling and non-fatal failure handling
- Background worker
"""

import math

import pytest
import torch

from submap_fusion.config import PoseGraphConfig
from submap_fusion.core.errors import OptimizationDidNotConverge
from submap_fusion.posegraph import (
    PoseGraph,
    PoseGraphEdge,
    PoseGraphOptimizer,
    PoseGraphWorker,
    edge_residuals,
    optimize_pose_graph,
)
from submap_fusion.utils.transforms import (
    make_pose,
    pose_inverse,
    relative_pose,
    rotation_angle,
    rotation_from_axis_angle,
    se3_exp,
    translation_distance,
)


def pose_at(x, z, yaw):
    R = rotation_from_axis_angle((0.0, 1.0, 0.0), yaw, dtype=torch.float64)
    return make_pose(R, torch.tensor([x, 0.0, z], dtype=torch.float64))


def square_loop():
    """Ground truth poses of four nodes on a square and their loop edges."""
    truth = {
        0: pose_at(0.0, 0.0, 0.0),
        1: pose_at(1.0, 0.0, math.pi / 2),
        2: pose_at(1.0, 1.0, math.pi),
        3: pose_at(0.0, 1.0, -math.pi / 2),
    }
    pairs = [(0, 1), (1, 2), (2, 3), (3, 0)]
    edges = [PoseGraphEdge(i, j, relative_pose(truth[i], truth[j])) for i, j in pairs]
    return truth, edges


def perturbed(truth, scale=0.05, seed=0):
    generator = torch.Generator().manual_seed(seed)
    nodes = {}
    for nid, pose in truth.items():
        if nid == 0:
            nodes[nid] = pose.clone()
        else:
            xi = torch.randn(6, generator=generator, dtype=torch.float64) * scale
            nodes[nid] = se3_exp(xi) @ pose
    return nodes


def total_error(nodes, edges):
    ids = sorted(nodes)
    index = {nid: i for i, nid in enumerate(ids)}
    poses = torch.stack([nodes[nid] for nid in ids])
    r = edge_residuals(
        poses,
        torch.tensor([index[e.from_id] for e in edges]),
        torch.tensor([index[e.to_id] for e in edges]),
        pose_inverse(torch.stack([e.relative_pose for e in edges])),
        torch.tensor([e.information_weight for e in edges], dtype=torch.float64).sqrt()
    )
    return r.dot(r).item()


class TestPoseGraph:
    """Test pose graph container."""

    def test_add_nodes(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, make_pose(translation=torch.tensor([1.0, 0.0, 0.0])))
        assert graph.num_nodes() == 2
        assert graph.nodes[1].dtype == torch.float64

    def test_duplicate_node_rejected(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        with pytest.raises(ValueError):
            graph.add_node(0, torch.eye(4))

    def test_invalid_node_pose_rejected(self):
        with pytest.raises(ValueError):
            PoseGraph().add_node(0, torch.zeros(4, 4))

    def test_add_edges(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, torch.eye(4))
        edge = graph.add_edge(0, 1, make_pose(translation=torch.tensor([1.0, 0.0, 0.0])))
        assert graph.num_edges() == 1
        assert edge.num_observations == 1
        assert graph.find_edge(0, 1) is edge
        assert graph.find_edge(1, 0) is None

    def test_edge_to_unknown_node(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        with pytest.raises(KeyError):
            graph.add_edge(0, 5, torch.eye(4))

    def test_odometry_edge(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, make_pose(translation=torch.tensor([0.0, 2.0, 0.0])))
        edge = graph.add_odometry_edge(0, 1)
        assert torch.allclose(edge.relative_pose[:3, 3], torch.tensor([0.0, 2.0, 0.0], dtype=torch.float64))

    def test_refine_edge_averages(self):
        """A second measurement moves the edge halfway and adds information."""
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, torch.eye(4))
        graph.add_edge(0, 1, make_pose(translation=torch.tensor([1.0, 0.0, 0.0])))

        edge = graph.refine_edge(0, 1, make_pose(translation=torch.tensor([2.0, 0.0, 0.0])))
        assert edge.num_observations == 2
        assert edge.information_weight == 2.0
        assert edge.relative_pose[0, 3].item() == pytest.approx(1.5)

        edge = graph.refine_edge(0, 1, make_pose(translation=torch.tensor([1.5, 0.0, 0.0])))
        assert edge.relative_pose[0, 3].item() == pytest.approx(1.5)
        assert edge.num_observations == 3

    def test_refine_missing_edge(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, torch.eye(4))
        with pytest.raises(KeyError):
            graph.refine_edge(0, 1, torch.eye(4))

    def test_snapshot_is_independent(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.add_node(1, torch.eye(4))
        graph.add_edge(0, 1, torch.eye(4))
        snapshot = graph.snapshot()

        graph.set_poses({1: make_pose(translation=torch.tensor([1.0, 0.0, 0.0]))})
        graph.refine_edge(0, 1, make_pose(translation=torch.tensor([1.0, 0.0, 0.0])))
        assert torch.allclose(snapshot.nodes[1], torch.eye(4, dtype=torch.float64))
        assert snapshot.edges[0].num_observations == 1

    def test_get_trajectory(self):
        graph = PoseGraph()
        for i in range(3):
            graph.add_node(i, make_pose(translation=torch.tensor([float(i), 0.0, 0.0])))
        trajectory = graph.get_trajectory()
        assert [nid for nid, _ in trajectory] == [0, 1, 2]
        assert trajectory[2][1][0].item() == 2.0

    def test_clear(self):
        graph = PoseGraph()
        graph.add_node(0, torch.eye(4))
        graph.clear()
        assert graph.num_nodes() == 0 and graph.num_edges() == 0


class TestSolver:
    """Tests for the pure optimization function."""

    def test_two_nodes(self):
        """The free node ends at anchor @ measurement."""
        anchor = pose_at(0.3, -0.2, 0.4)
        measurement = pose_at(1.0, 0.5, -0.3)
        nodes = {0: anchor, 1: pose_at(0.0, 0.0, 0.0)}
        edges = [PoseGraphEdge(0, 1, measurement)]

        result = optimize_pose_graph(nodes, edges, anchor_id=0)
        assert result.success
        assert torch.allclose(result.poses[0], anchor)
        assert torch.allclose(result.poses[1], anchor @ measurement, atol=1e-6)
        assert result.final_error < 1e-10

    def test_inputs_not_modified(self):
        truth, edges = square_loop()
        nodes = perturbed(truth)
        before = {k: v.clone() for k, v in nodes.items()}
        optimize_pose_graph(nodes, edges, anchor_id=0)
        for nid in nodes:
            assert torch.equal(nodes[nid], before[nid])

    def test_loop_recovers_truth(self):
        """Consistent loop measurements pull perturbed nodes back to the truth."""
        truth, edges = square_loop()
        nodes = perturbed(truth)
        initial = total_error(nodes, edges)

        result = optimize_pose_graph(nodes, edges, anchor_id=0)
        assert result.success
        assert result.final_error < initial
        assert result.initial_error == pytest.approx(initial)
        assert torch.allclose(result.poses[0], nodes[0], atol=1e-12)
        for nid, pose in truth.items():
            assert translation_distance(result.poses[nid], pose) < 1e-4
            assert rotation_angle(result.poses[nid], pose) < 1e-4

    def test_inconsistent_loop_error_decreases(self):
        """With a biased loop edge the error still goes down and the anchor stays."""
        truth, edges = square_loop()
        edges[3] = PoseGraphEdge(3, 0, edges[3].relative_pose @ pose_at(0.1, 0.05, 0.05))
        nodes = perturbed(truth, scale=0.1, seed=3)

        result = optimize_pose_graph(nodes, edges, anchor_id=0)
        assert result.final_error < result.initial_error
        assert result.final_error < total_error(truth, edges)
        assert torch.allclose(result.poses[0], nodes[0], atol=1e-12)

    def test_anchor_can_be_any_node(self):
        truth, edges = square_loop()
        nodes = perturbed(truth)
        nodes[2] = truth[2].clone()
        result = optimize_pose_graph(nodes, edges, anchor_id=2)
        assert torch.allclose(result.poses[2], nodes[2], atol=1e-12)

    def test_iteration_cap_raises(self):
        truth, edges = square_loop()
        nodes = perturbed(truth, scale=0.2)
        with pytest.raises(OptimizationDidNotConverge) as info:
            optimize_pose_graph(nodes, edges, anchor_id=0, max_iterations=1)
        assert info.value.num_iterations == 1
        assert math.isfinite(info.value.final_error)

    def test_nothing_to_optimize(self):
        result = optimize_pose_graph({0: torch.eye(4)}, [], anchor_id=0)
        assert result.success and result.num_iterations == 0

    def test_unknown_anchor(self):
        with pytest.raises(KeyError):
            optimize_pose_graph({0: torch.eye(4)}, [], anchor_id=4)

    def test_information_weight(self):
        """The heavier of two conflicting measurements wins."""
        nodes = {0: pose_at(0.0, 0.0, 0.0), 1: pose_at(0.0, 0.0, 0.0)}
        edges = [
            PoseGraphEdge(0, 1, pose_at(1.0, 0.0, 0.0), information_weight=9.0),
            PoseGraphEdge(0, 1, pose_at(2.0, 0.0, 0.0), information_weight=1.0),
        ]
        result = optimize_pose_graph(nodes, edges, anchor_id=0)
        assert result.poses[1][0, 3].item() == pytest.approx(1.1, abs=1e-4)


class TestPoseGraphOptimizer:
    """Tests for the scheduling wrapper."""

    def build(self, config=None):
        optimizer = PoseGraphOptimizer(config or PoseGraphConfig())
        truth, edges = square_loop()
        nodes = perturbed(truth)
        for nid in sorted(nodes):
            optimizer.add_node(nid, nodes[nid])
        return optimizer, truth, edges

    def test_first_node_is_anchor(self):
        optimizer, _, _ = self.build()
        assert optimizer.anchor_id == 0

    def test_schedule_after_new_edges(self):
        optimizer, _, edges = self.build(PoseGraphConfig(optimize_after_new_edges=3, optimize_every_n_frames=100))
        assert not optimizer.should_optimize(1)
        for edge in edges[:2]:
            optimizer.add_edge(edge.from_id, edge.to_id, edge.relative_pose)
        assert not optimizer.should_optimize(1)
        optimizer.add_edge(edges[2].from_id, edges[2].to_id, edges[2].relative_pose)
        assert optimizer.should_optimize(1)

        optimizer.mark_submitted(1)
        assert not optimizer.should_optimize(2)

    def test_schedule_every_n_frames(self):
        optimizer, _, edges = self.build(PoseGraphConfig(optimize_after_new_edges=10, optimize_every_n_frames=5))
        optimizer.add_edge(edges[0].from_id, edges[0].to_id, edges[0].relative_pose)
        assert not optimizer.should_optimize(4)
        assert optimizer.should_optimize(5)

    def test_optimize_commits_on_success(self):
        optimizer, truth, edges = self.build()
        for edge in edges:
            optimizer.add_edge(edge.from_id, edge.to_id, edge.relative_pose)

        result = optimizer.optimize(frame_id=1)
        assert result.success
        assert optimizer.num_optimizations == 1
        for nid, pose in truth.items():
            assert translation_distance(optimizer.get_pose(nid), pose) < 1e-4

    def test_failure_keeps_poses(self):
        """A solver failure is reported, not raised, and poses stay unchanged."""
        optimizer, _, edges = self.build(PoseGraphConfig(max_iterations=1))
        for edge in edges:
            optimizer.add_edge(edge.from_id, edge.to_id, edge.relative_pose)
        optimizer.refine_edge(3, 0, edges[3].relative_pose @ pose_at(0.3, 0.2, 0.4))
        before = optimizer.get_poses()

        result = optimizer.optimize(frame_id=1)
        assert not result.success
        assert optimizer.num_failures == 1
        assert optimizer.last_result is result
        for nid, pose in optimizer.get_poses().items():
            assert torch.equal(pose, before[nid])

    def test_reset(self):
        optimizer, _, _ = self.build()
        optimizer.reset()
        assert optimizer.anchor_id is None
        assert optimizer.graph.num_nodes() == 0
        result = optimizer.optimize()
        assert result.success and result.poses == {}


class TestPoseGraphWorker:
    """Tests for background optimization."""

    def test_worker_matches_synchronous_solver(self):
        truth, edges = square_loop()
        graph = PoseGraph()
        for nid, pose in perturbed(truth).items():
            graph.add_node(nid, pose)
        for edge in edges:
            graph.add_edge(edge.from_id, edge.to_id, edge.relative_pose)
        snapshot = graph.snapshot()

        expected = optimize_pose_graph(snapshot.nodes, snapshot.edges, anchor_id=0)

        worker = PoseGraphWorker()
        worker.start()
        try:
            assert worker.is_running
            worker.submit(graph.snapshot(), 0)
            result = worker.wait(timeout=60.0)
        finally:
            worker.stop()

        assert result is not None
        assert result.success
        assert worker.jobs_completed == 1
        for nid in expected.poses:
            assert torch.allclose(result.poses[nid], expected.poses[nid], atol=1e-10)

    def test_worker_reports_failure(self):
        truth, edges = square_loop()
        nodes = perturbed(truth, scale=0.2)
        graph = PoseGraph()
        for nid, pose in nodes.items():
            graph.add_node(nid, pose)
        for edge in edges:
            graph.add_edge(edge.from_id, edge.to_id, edge.relative_pose)

        worker = PoseGraphWorker(max_iterations=1)
        worker.start()
        try:
            worker.submit(graph.snapshot(), 0)
            result = worker.wait(timeout=60.0)
        finally:
            worker.stop()
        assert result is not None
        assert not result.success

    def test_busy_until_result_is_published(self):
        """A queued request counts as busy before the thread picks it up."""
        truth, edges = square_loop()
        graph = PoseGraph()
        for nid, pose in perturbed(truth).items():
            graph.add_node(nid, pose)
        for edge in edges:
            graph.add_edge(edge.from_id, edge.to_id, edge.relative_pose)

        worker = PoseGraphWorker()
        worker.submit(graph.snapshot(), 0)
        worker.submit(graph.snapshot(), 0)
        assert worker.is_busy

        worker.start()
        try:
            result = worker.wait(timeout=60.0)
        finally:
            worker.stop()

        assert result is not None
        assert not worker.is_busy
        # The stale request was replaced, not solved
        assert worker.jobs_completed == 1
        assert worker.poll() is None

    def test_poll_without_results(self):
        worker = PoseGraphWorker()
        assert worker.poll() is None
        assert not worker.is_busy
