import unittest

from converters.codecs import (
    MAX_SAFE_INTEGER,
    canonical_watch_url,
    channel_url,
    clamp_to_safe_int,
    extract_channel_id,
    extract_playlist_id,
    extract_video_id,
    format_upload_date,
    is_platform_url,
    normalize_timestamp,
    playlist_url,
    to_epoch_seconds,
)


class SafeIntegerClampTests(unittest.TestCase):
    def test_large_values_clamp_to_bounds(self):
        self.assertEqual(clamp_to_safe_int(1e20), 9007199254740991)
        self.assertEqual(clamp_to_safe_int(-1e20), -9007199254740991)
        self.assertEqual(clamp_to_safe_int(9223372036854775807), MAX_SAFE_INTEGER)

    def test_non_finite_and_missing_values_become_zero(self):
        self.assertEqual(clamp_to_safe_int(float('nan')), 0)
        self.assertEqual(clamp_to_safe_int(float('inf')), 0)
        self.assertEqual(clamp_to_safe_int(None), 0)
        self.assertEqual(clamp_to_safe_int(''), 0)
        self.assertEqual(clamp_to_safe_int('abc'), 0)

    def test_truncates_toward_zero_and_parses_strings(self):
        self.assertEqual(clamp_to_safe_int(42.9), 42)
        self.assertEqual(clamp_to_safe_int(-3.7), -3)
        self.assertEqual(clamp_to_safe_int('1500'), 1500)
        self.assertEqual(clamp_to_safe_int('12.75'), 12)


class TimestampNormalizationTests(unittest.TestCase):
    def test_compact_date_formats_as_calendar_date(self):
        self.assertEqual(format_upload_date(20230424), '2023-04-24')
        self.assertEqual(format_upload_date('20230424'), '2023-04-24')

    def test_epoch_seconds_format_as_utc_date(self):
        self.assertEqual(format_upload_date(1691576017), '2023-08-09')
        self.assertEqual(format_upload_date(1691576017000), '2023-08-09')

    def test_iso_strings_keep_their_date(self):
        self.assertEqual(format_upload_date('2021-05-06T23:30:00Z'), '2021-05-06')
        self.assertEqual(format_upload_date('2021-05-06'), '2021-05-06')

    def test_unparseable_dates_fall_back_to_epoch(self):
        self.assertEqual(format_upload_date('not a date'), '1970-01-01')
        self.assertEqual(format_upload_date(None), '1970-01-01')

    def test_normalize_timestamp_classifies_by_magnitude(self):
        self.assertEqual(normalize_timestamp(1691576017000), 1691576017000)
        self.assertEqual(normalize_timestamp(1691576017), 1691576017000)
        self.assertEqual(normalize_timestamp('1691576017'), 1691576017000)
        self.assertEqual(normalize_timestamp(20230424), 1682294400000)
        self.assertEqual(normalize_timestamp(500), 500)

    def test_normalize_timestamp_parses_date_strings(self):
        self.assertEqual(normalize_timestamp('2023-04-24T00:00:00Z'), 1682294400000)
        self.assertEqual(normalize_timestamp('2023-04-24'), 1682294400000)
        self.assertEqual(normalize_timestamp('garbage'), 0)
        self.assertEqual(normalize_timestamp(None), 0)

    def test_epoch_seconds(self):
        self.assertIsNone(to_epoch_seconds(None))
        self.assertEqual(to_epoch_seconds('2023-04-24'), 1682294400)
        self.assertEqual(to_epoch_seconds(1682294400000), 1682294400)


class IdentifierTests(unittest.TestCase):
    def test_video_id_from_every_url_shape(self):
        self.assertEqual(extract_video_id('https://www.youtube.com/watch?v=abc123&t=5'), 'abc123')
        self.assertEqual(extract_video_id('https://www.youtube.com/watch?feature=x&v=def-456'), 'def-456')
        self.assertEqual(extract_video_id('https://youtu.be/XyZ_-1'), 'XyZ_-1')
        self.assertEqual(extract_video_id('https://www.youtube.com/shorts/short1'), 'short1')
        self.assertEqual(extract_video_id('https://www.youtube.com/embed/emb1'), 'emb1')

    def test_video_id_missing(self):
        self.assertEqual(extract_video_id('https://example.com/video'), '')
        self.assertEqual(extract_video_id(None), '')

    def test_channel_and_playlist_ids(self):
        self.assertEqual(extract_channel_id('https://www.youtube.com/channel/UC123'), 'UC123')
        self.assertEqual(extract_channel_id('https://www.youtube.com/user/someone'), 'someone')
        self.assertEqual(extract_channel_id('UCabcdefghijklmnopqrstuv'), 'UCabcdefghijklmnopqrstuv')
        self.assertEqual(extract_channel_id('https://example.com/c/x'), '')
        self.assertEqual(extract_playlist_id('https://www.youtube.com/playlist?list=PL1&index=2'), 'PL1')

    def test_url_builders(self):
        self.assertEqual(canonical_watch_url('abc'), 'https://www.youtube.com/watch?v=abc')
        self.assertEqual(channel_url('UC1'), 'https://www.youtube.com/channel/UC1')
        self.assertEqual(playlist_url('PL1'), 'https://www.youtube.com/playlist?list=PL1')

    def test_platform_filter(self):
        self.assertTrue(is_platform_url('https://www.youtube.com/channel/UC123'))
        self.assertTrue(is_platform_url('https://youtu.be/abc'))
        self.assertFalse(is_platform_url('https://peertube.example/c/other'))
        self.assertFalse(is_platform_url(''))


if __name__ == '__main__':
    unittest.main()
