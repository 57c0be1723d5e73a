import os

import h5py
import numpy as np
import pytest

import analyser as an
import parser as ps
import post_process as pp
import run_processer
import sanityplots as sanity
from config import config_from_dict
from harmonics import CorrelationContainer, EventType
from processer import run_pass


@pytest.fixture
def input_dir(tmp_path, event_stream):
    ps.write_events(tmp_path / "femto_1_0.h5", event_stream[:15])
    ps.write_events(tmp_path / "femto_1_1.h5", event_stream[15:])
    (tmp_path / "notes.txt").write_text("not an input file")
    return tmp_path


class TestEventFiles:

    def test_round_trip(self, tmp_path, event_stream):
        path = tmp_path / "femto_7_0.h5"
        ps.write_events(path, event_stream)
        back = list(ps.read_events(str(path)))
        assert len(back) == len(event_stream)
        for a, b in zip(event_stream, back):
            assert a.event_id == b.event_id
            assert a.vertex_z == pytest.approx(b.vertex_z)
            assert a.mag_field == pytest.approx(b.mag_field)
            # field by field: the TOF columns hold NaN
            for name in a.particles.dtype.names:
                np.testing.assert_array_equal(a.particles[name], b.particles[name])

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            list(ps.read_events(str(tmp_path / "nope.h5")))

    def test_wrong_layout(self, tmp_path):
        path = tmp_path / "other.h5"
        with h5py.File(path, 'w') as f:
            f.create_dataset('tracks', data=np.zeros(3))
        with pytest.raises(KeyError, match="tracks"):
            list(ps.read_events(str(path)))

    def test_parser_orders_files(self, input_dir):
        parser = ps.Parser(str(input_dir))
        paths = parser.get_all_h5_paths()
        assert [os.path.basename(p) for p in paths] == ["femto_1_0.h5", "femto_1_1.h5"]
        assert [ev.event_id for ev in parser.events()] == list(range(30))

    def test_parser_empty_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ps.Parser(str(tmp_path))


class TestOutput:

    def test_round_trip(self, tmp_path, pion_cfg, event_stream):
        task = run_pass(event_stream, pion_cfg, seed=9)
        out = tmp_path / "out.h5"
        an.save_hdf5(str(out), task, node_id=4)
        containers, meta, qa = an.load_hdf5(str(out))

        assert sorted(containers) == ['MM', 'PM', 'PP']
        assert meta['node_id'] == 4
        assert meta['n_events'] == 30
        assert meta['frame'] == 'LCMS'
        assert list(meta['channels']) == ['PM', 'PP', 'MM']
        np.testing.assert_array_equal(meta['kstar_bins'], pion_cfg.binning.kstar_bins)
        for name, cont in containers.items():
            orig = task.accumulator.container(name)
            assert cont.same_binning(orig)
            for event_type in EventType:
                np.testing.assert_array_equal(cont.arrays(event_type).second,
                                              orig.arrays(event_type).second)
                np.testing.assert_array_equal(cont.arrays(event_type).covariance,
                                              orig.arrays(event_type).covariance)
        assert qa['mixing']['events_per_bin'].sum() == 30
        assert 'same_before' in qa['cpr']
        assert qa['events']['vertex_z'].sum() == 30
        np.testing.assert_array_equal(qa['tracks']['role1_pt'], task.qa.tracks['role1_pt'])

    def test_not_an_output(self, tmp_path, event_stream):
        path = tmp_path / "femto_1_0.h5"
        ps.write_events(path, event_stream[:2])
        with pytest.raises(KeyError, match="available groups"):
            an.load_hdf5(str(path))


class TestMerge:

    @pytest.fixture
    def node_files(self, tmp_path, pion_cfg, event_stream):
        files = []
        for node, chunk in enumerate((event_stream[:15], event_stream[15:])):
            path = str(tmp_path / f"node_{node}.h5")
            an.save_hdf5(path, run_pass(chunk, pion_cfg, seed=node), node_id=node)
            files.append(path)
        return files

    def test_sums(self, node_files):
        parts = [an.load_hdf5(f)[0] for f in node_files]
        containers, meta, qa = pp.merge_outputs(node_files)
        assert meta['n_events'] == 30
        assert meta['node_id'] == [0, 1]

        for name, cont in containers.items():
            np.testing.assert_array_equal(
                cont.numerator.entries,
                parts[0][name].numerator.entries + parts[1][name].numerator.entries)

            # covariance from the merged sums, not the sum of covariances
            ref = CorrelationContainer(cont.kstar_axis.edges, cont.kt_axis.edges,
                                       cont.mult_axis.edges, l_max=cont.l_max)
            ref.merge(parts[0][name]).merge(parts[1][name])
            np.testing.assert_allclose(cont.numerator.covariance,
                                       ref.compute_covariance(EventType.SAME), atol=1e-9)

    def test_save_merged(self, tmp_path, node_files):
        merged = str(tmp_path / "merged.h5")
        pp.save_merged(merged, *pp.merge_outputs(node_files))
        containers, meta, _ = an.load_hdf5(merged)
        assert meta['n_events'] == 30
        assert containers['PP'].numerator.covariance is not None

    def test_selection_qa_summed(self, node_files):
        _, _, qa = pp.merge_outputs(node_files)
        parts = [an.load_hdf5(f)[2] for f in node_files]
        assert qa['events']['multiplicity'].sum() == 30
        np.testing.assert_array_equal(qa['tracks']['role2_eta'],
                                      parts[0]['tracks']['role2_eta']
                                      + parts[1]['tracks']['role2_eta'])

    def test_merge_a_merged_output(self, tmp_path, node_files, pion_cfg, event_stream):
        merged = str(tmp_path / "merged_01.h5")
        pp.save_merged(merged, *pp.merge_outputs(node_files))
        third = str(tmp_path / "node_2.h5")
        an.save_hdf5(third, run_pass(event_stream[:5], pion_cfg, seed=2), node_id=2)

        containers, meta, qa = pp.merge_outputs([merged, third])
        assert meta['node_id'] == [0, 1, 2]
        assert meta['n_events'] == 35

        again = str(tmp_path / "merged_012.h5")
        pp.save_merged(again, containers, meta, qa)
        _, back, back_qa = an.load_hdf5(again)
        assert list(back['node_id']) == [0, 1, 2]
        assert back['n_events'] == 35
        assert back_qa['events']['vertex_z'].sum() == 35

    def test_mismatched_binning(self, tmp_path, node_files, event_stream):
        cfg = config_from_dict({'use_3d': False, 'l_max': 1,
                                'binning': {'kstar_bins': {'n': 10, 'min': 0.0, 'max': 2.0}}})
        other = str(tmp_path / "other.h5")
        an.save_hdf5(other, run_pass(event_stream[:3], cfg))
        with pytest.raises(ValueError, match="differs"):
            pp.merge_outputs([node_files[0], other])


class TestCorrelationFunction:

    def test_flat_when_same_equals_mixed(self, rng):
        cont = CorrelationContainer(np.linspace(0.0, 0.3, 31), l_max=0)
        n = 5000
        kv = rng.uniform(0.0, 0.3, n)
        for event_type in EventType:
            cont.fill(event_type, kv, np.zeros(n), np.zeros(n), np.full(n, 0.3), 1.0)
        cf = pp.correlation_function(cont)
        filled = np.isfinite(cf['C'])
        np.testing.assert_allclose(cf['C'][filled], 1.0)
        assert np.all(cf['C_err'][filled] > 0)

    def test_normalisation(self, rng):
        cont = CorrelationContainer(np.linspace(0.0, 0.3, 31), l_max=0)
        kv = rng.uniform(0.0, 0.3, 4000)
        zeros = np.zeros(4000)
        cont.fill('same', kv, zeros, zeros, 0.3, 1.0)
        cont.fill('mixed', kv, zeros, zeros, 0.3, 1.0, weight=3.0)
        cf = pp.correlation_function(cont)
        assert cf['norm'][0, 0] == pytest.approx(3.0)
        np.testing.assert_allclose(cf['C'][np.isfinite(cf['C'])], 1.0)

    def test_empty(self):
        cf = pp.correlation_function(CorrelationContainer(np.linspace(0.0, 0.3, 31), l_max=0))
        assert np.all(np.isnan(cf['C']))
        assert np.isnan(cf['norm'][0, 0])


def test_plots(tmp_path, pion_cfg, event_stream):
    out = str(tmp_path / "out.h5")
    an.save_hdf5(out, run_pass(event_stream, pion_cfg))
    paths = sanity.plot_all(*an.load_hdf5(out), str(tmp_path))
    assert len(paths) == 6
    assert all(os.path.isfile(p) for p in paths)


def test_command_line(tmp_path, input_dir):
    out = str(tmp_path / "result.h5")
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("use_3d: false\nchannels: {PM: true}\nl_max: 1\n")
    assert run_processer.main([str(input_dir), out, '--config', str(cfg), '--seed', '3']) == 0
    containers, meta, _ = an.load_hdf5(out)
    assert meta['seed'] == 3
    assert meta['n_events'] == 30
    assert sorted(containers) == ['MM', 'PM', 'PP']


def test_command_line_bad_config(tmp_path, input_dir):
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("role_one: {pdg: 3122}\n")
    assert run_processer.main([str(input_dir), str(tmp_path / "x.h5"), '--config', str(cfg)]) == 1
