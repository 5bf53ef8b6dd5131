"""
Per-platform publishers for Facebook, Instagram, and LinkedIn.

Each publisher takes a ready access token, the platform account id and a
PublishContent, makes the platform's publish call(s) and returns a
PublishedRef. Failures raise PublishError (retryable) or ValidationError
(content the platform can never accept).
"""

import json
import logging
import mimetypes
import time
from urllib.parse import urlparse

import requests

from socialpub.errors import PublishError, ValidationError
from socialpub.models import Platform
from socialpub.oauth import FB_GRAPH_BASE, LI_API_BASE

logger = logging.getLogger(__name__)

# Advisory limits for compose-time checks; publishers never truncate
CHARACTER_LIMITS = {
    'facebook': 2000,
    'instagram': 2200,
    'linkedin': 3000,
    'twitter': 280,
}

VIDEO_EXTENSIONS = ('.mp4', '.mov', '.avi', '.mkv', '.webm', '.m4v')


def _get_mime_type(url):
    mime, _ = mimetypes.guess_type(urlparse(url).path)
    return mime or 'application/octet-stream'


def _is_video(url):
    path = urlparse(url).path.lower()
    return _get_mime_type(url).startswith('video/') or path.endswith(VIDEO_EXTENSIONS)


class PublishContent:
    """Normalized content for one platform."""

    def __init__(self, text, media_urls=None, hashtags=None, call_to_action=None):
        self.text = text or ''
        self.media_urls = list(media_urls or [])
        self.hashtags = list(hashtags or [])
        self.call_to_action = call_to_action

    @property
    def images(self):
        return [u for u in self.media_urls if not _is_video(u)]

    @property
    def videos(self):
        return [u for u in self.media_urls if _is_video(u)]

    def caption(self):
        """Text, then call to action, then ``#``-prefixed hashtags."""
        parts = [self.text.strip()]
        if self.call_to_action:
            parts.append(self.call_to_action.strip())
        tags = []
        for tag in self.hashtags:
            tag = tag.strip()
            if tag and not tag.startswith('#'):
                tag = f'#{tag}'
            if tag:
                tags.append(tag)
        if tags:
            parts.append(' '.join(tags))
        return '\n\n'.join(p for p in parts if p)


def content_for_platform(post, platform):
    """The post's platform variant where it sets a field, the post's defaults otherwise."""
    platform = Platform.parse(platform)
    variant = post.platform_variants.get(platform.value) or {}
    if not isinstance(variant, dict):
        raise ValidationError(f'Malformed {platform.value} variant')
    return PublishContent(
        text=variant.get('content') or post.content,
        media_urls=variant.get('media_urls') or post.media_urls,
        hashtags=variant.get('hashtags') or post.hashtags,
        call_to_action=variant.get('call_to_action') or post.call_to_action,
    )


class PublishedRef:

    def __init__(self, platform_post_id, raw_response, platform_url=None):
        self.platform_post_id = platform_post_id
        self.raw_response = raw_response
        self.platform_url = platform_url


class PlatformPublisher:
    platform = None

    def __init__(self, timeout=30, session=None):
        self.timeout = timeout
        self.http = session or requests

    def publish(self, token, account_id, content):
        raise NotImplementedError

    def _error_message(self, resp):
        try:
            data = resp.json()
        except ValueError:
            return f'HTTP {resp.status_code}'
        err = data.get('error')
        if isinstance(err, dict):
            return err.get('message') or f'HTTP {resp.status_code}'
        return data.get('message') or f'HTTP {resp.status_code}'

    def _request(self, method, url, **kwargs):
        """Send one call and return its JSON body; any failure becomes PublishError."""
        kwargs.setdefault('timeout', self.timeout)
        try:
            resp = self.http.request(method, url, **kwargs)
        except requests.Timeout as e:
            raise PublishError(self.platform.value, f'Request timed out: {e}') from e
        except requests.RequestException as e:
            raise PublishError(self.platform.value, str(e)) from e
        if not resp.ok:
            raise PublishError(self.platform.value, self._error_message(resp))
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and isinstance(data.get('error'), dict):
            raise PublishError(self.platform.value, data['error'].get('message', 'unknown error'), data)
        return data


class FacebookPublisher(PlatformPublisher):
    """Publish to a Facebook Page."""

    platform = Platform.FACEBOOK

    def publish(self, token, account_id, content):
        page_id = account_id
        caption = content.caption()
        media = content.media_urls

        if not media:
            data = self._request('POST', f'{FB_GRAPH_BASE}/{page_id}/feed',
                                 data={'message': caption, 'access_token': token})
            return self._ref(data.get('id', ''), data)

        if len(media) == 1 and _is_video(media[0]):
            data = self._request('POST', f'{FB_GRAPH_BASE}/{page_id}/videos',
                                 data={'description': caption, 'file_url': media[0],
                                       'access_token': token})
            video_id = data.get('id', '')
            return PublishedRef(video_id, data,
                                f'https://www.facebook.com/{page_id}/videos/{video_id}' if video_id else '')

        if len(media) == 1:
            data = self._request('POST', f'{FB_GRAPH_BASE}/{page_id}/photos',
                                 data={'message': caption, 'url': media[0], 'access_token': token})
            return self._ref(data.get('post_id') or data.get('id', ''), data)

        if content.videos:
            raise ValidationError('Facebook multi-media posts accept images only')

        # Multiple images: upload each unpublished, then attach them to one feed post
        attached_media = []
        for url in media:
            photo = self._request('POST', f'{FB_GRAPH_BASE}/{page_id}/photos',
                                  data={'url': url, 'published': 'false', 'access_token': token})
            if not photo.get('id'):
                raise PublishError(self.platform.value, f'Photo upload returned no id for {url}', photo)
            attached_media.append({'media_fbid': photo['id']})

        post_data = {'message': caption, 'access_token': token}
        for i, item in enumerate(attached_media):
            post_data[f'attached_media[{i}]'] = json.dumps(item)
        data = self._request('POST', f'{FB_GRAPH_BASE}/{page_id}/feed', data=post_data)
        return self._ref(data.get('id', ''), data)

    def _ref(self, post_id, data):
        if not post_id:
            raise PublishError(self.platform.value, 'Facebook returned no post id', data)
        return PublishedRef(post_id, data, f'https://www.facebook.com/{post_id}')


class InstagramPublisher(PlatformPublisher):
    """Publish to an Instagram business account: create a container, then publish it."""

    platform = Platform.INSTAGRAM

    def __init__(self, timeout=30, session=None, poll_interval=5, poll_attempts=30):
        super().__init__(timeout, session)
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts

    def publish(self, token, account_id, content):
        if not content.images:
            raise ValidationError('Instagram posts require at least one image')
        ig_user_id = account_id
        caption = content.caption()
        media = content.media_urls

        if len(media) == 1:
            data = self._request('POST', f'{FB_GRAPH_BASE}/{ig_user_id}/media', data={
                'image_url': media[0],
                'caption': caption,
                'access_token': token,
            })
            creation_id = self._container_id(data)
        else:
            children = []
            for url in media:
                child = {'is_carousel_item': 'true', 'access_token': token}
                if _is_video(url):
                    child['media_type'] = 'VIDEO'
                    child['video_url'] = url
                else:
                    child['image_url'] = url
                children.append(self._container_id(
                    self._request('POST', f'{FB_GRAPH_BASE}/{ig_user_id}/media', data=child)))
            for child_id in children:
                self._wait_for_container(child_id, token)
            data = self._request('POST', f'{FB_GRAPH_BASE}/{ig_user_id}/media', data={
                'media_type': 'CAROUSEL',
                'caption': caption,
                'children': ','.join(children),
                'access_token': token,
            })
            creation_id = self._container_id(data)

        self._wait_for_container(creation_id, token)
        published = self._request('POST', f'{FB_GRAPH_BASE}/{ig_user_id}/media_publish',
                                  data={'creation_id': creation_id, 'access_token': token})
        media_id = published.get('id')
        if not media_id:
            raise PublishError(self.platform.value, 'Instagram publish returned no media id', published)
        return PublishedRef(media_id, published, self._permalink(media_id, token))

    def _container_id(self, data):
        if not data.get('id'):
            raise PublishError(self.platform.value, 'Instagram media container was not created', data)
        return data['id']

    def _wait_for_container(self, container_id, token):
        """Wait for an Instagram media container to finish processing."""
        for _ in range(self.poll_attempts):
            data = self._request('GET', f'{FB_GRAPH_BASE}/{container_id}',
                                 params={'fields': 'status_code', 'access_token': token})
            status = data.get('status_code')
            if status in (None, 'FINISHED', 'PUBLISHED'):
                return
            if status in ('ERROR', 'EXPIRED'):
                raise PublishError(self.platform.value, f'Instagram container {container_id} failed processing', data)
            time.sleep(self.poll_interval)
        raise PublishError(self.platform.value, f'Instagram container {container_id} timed out')

    def _permalink(self, media_id, token):
        try:
            data = self._request('GET', f'{FB_GRAPH_BASE}/{media_id}',
                                 params={'fields': 'permalink', 'access_token': token})
        except PublishError:
            # The post is live; a missing permalink is not a failure
            logger.warning(f"Could not fetch permalink for Instagram media {media_id}")
            return ''
        return data.get('permalink', '')


class LinkedInPublisher(PlatformPublisher):
    """Publish a UGC post as a LinkedIn member."""

    platform = Platform.LINKEDIN

    def publish(self, token, account_id, content):
        author_urn = f'urn:li:person:{account_id}'
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
            'X-Restli-Protocol-Version': '2.0.0',
        }
        if content.videos:
            raise ValidationError('LinkedIn posts here support text and images only')

        media_assets = [self._upload_image(url, author_urn, token, headers) for url in content.images]
        share = {
            'shareCommentary': {'text': content.caption()},
            'shareMediaCategory': 'IMAGE' if media_assets else 'NONE',
        }
        if media_assets:
            share['media'] = media_assets
        body = {
            'author': author_urn,
            'lifecycleState': 'PUBLISHED',
            'specificContent': {'com.linkedin.ugc.ShareContent': share},
            'visibility': {'com.linkedin.ugc.MemberNetworkVisibility': 'PUBLIC'},
        }
        data = self._request('POST', f'{LI_API_BASE}/ugcPosts', json=body, headers=headers)
        post_id = data.get('id')
        if not post_id:
            raise PublishError(self.platform.value, 'LinkedIn returned no post id', data)
        return PublishedRef(post_id, data, f'https://www.linkedin.com/feed/update/{post_id}')

    def _upload_image(self, url, author_urn, token, headers):
        """Register an upload, push the image bytes, and return the media entry."""
        registered = self._request('POST', f'{LI_API_BASE}/assets?action=registerUpload', json={
            'registerUploadRequest': {
                'recipes': ['urn:li:digitalmediaRecipe:feedshare-image'],
                'owner': author_urn,
                'serviceRelationships': [{
                    'relationshipType': 'OWNER',
                    'identifier': 'urn:li:userGeneratedContent',
                }],
            }
        }, headers=headers)
        try:
            value = registered['value']
            upload_url = value['uploadMechanism'][
                'com.linkedin.digitalmedia.uploading.MediaUploadHttpRequest']['uploadUrl']
            asset = value['asset']
        except (KeyError, TypeError):
            raise PublishError(self.platform.value, 'LinkedIn upload registration was malformed', registered) from None

        try:
            source = self.http.get(url, timeout=self.timeout)
            source.raise_for_status()
            uploaded = self.http.put(upload_url, data=source.content, headers={
                'Authorization': f'Bearer {token}',
                'Content-Type': _get_mime_type(url),
            }, timeout=self.timeout)
            uploaded.raise_for_status()
        except requests.RequestException as e:
            raise PublishError(self.platform.value, f'Image upload failed for {url}: {e}') from e

        return {
            'status': 'READY',
            'description': {'text': ''},
            'media': asset,
            'title': {'text': urlparse(url).path.rsplit('/', 1)[-1]},
        }


# Platform dispatch
PLATFORM_PUBLISHERS = {
    Platform.FACEBOOK: FacebookPublisher,
    Platform.INSTAGRAM: InstagramPublisher,
    Platform.LINKEDIN: LinkedInPublisher,
}


def build_publishers(config, session=None):
    return {platform: cls(timeout=config.http_timeout, session=session)
            for platform, cls in PLATFORM_PUBLISHERS.items()}
