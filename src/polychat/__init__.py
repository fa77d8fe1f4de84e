"""
The main entrypoint for the Polychat package.

This module contains the Polychat application class, which wires the pillars
together: the session (``auth``), the persistence gateway (``store``), one
provider adapter per model family (``llm``), the title generator
(``titles``), routing (``url``) and the view (``layout``).
"""

from typing import Dict, List, Optional

from dash import Dash

from . import auth, layout, llm, store, titles, url
from .loop import BackgroundLoop
from .models import AVAILABLE_MODELS, ModelRef, ProviderType
from .navigation import Navigator


class Polychat(Dash):
    """
    A chat front-end for several LLM provider families.

    The constructor uses concrete default implementations for every pillar,
    so ``Polychat()`` talks to the configured backend and OpenAI. Any pillar
    can be replaced by passing an implementation of its interface.
    """

    def __init__(
        self,
        layout: Optional["layout.Layout"] = None,
        auth: Optional["auth.Auth"] = None,
        store: Optional["store.Store"] = None,
        llms: Optional[Dict[ProviderType, "llm.LLM"]] = None,
        titles: Optional["titles.Titles"] = None,
        url: Optional["url.URL"] = None,
        models: Optional[List[ModelRef]] = None,
        **kwargs,
    ) -> None:
        """
        Initialize the application with configurable pillars.

        Parameters
        ----------
        layout : layout.Layout, optional
            Builds the Dash component tree. Defaults to ``layout.Bootstrap()``.
        auth : auth.Auth, optional
            Supplies bearer tokens. Defaults to ``auth.Session()`` against the
            configured backend.
        store : store.Store, optional
            Persistence gateway. Defaults to ``store.Http(auth)``.
        llms : dict, optional
            Provider adapters keyed by ``ProviderType``. Defaults to
            ``llm.OpenAI()``, ``llm.OpenAIAssistant()`` and
            ``llm.Backend(store)``. When given, only these adapters are used
            and turns of models from other families fail.
        titles : titles.Titles, optional
            Names new chats. Defaults to ``titles.OpenAI()``.
        url : url.URL, optional
            Route scheme. Defaults to ``url.PathBased()``.
        models : list of ModelRef, optional
            Selectable models; the first one is the default.
        **kwargs
            Additional arguments passed to the Dash constructor.

        Raises
        ------
        ValueError
            If the layout is missing component IDs the callbacks need.

        Examples
        --------
        >>> app = Polychat()

        Offline development:

        >>> app = Polychat(
        ...     auth=auth.Static(),
        ...     store=store.InMemory(),
        ...     llms={ProviderType.DIRECT: llm.Echo()},
        ...     titles=titles.FirstMessage(),
        ... )
        """
        auth_module = globals()["auth"]
        layout_module = globals()["layout"]
        llm_module = globals()["llm"]
        store_module = globals()["store"]
        titles_module = globals()["titles"]
        url_module = globals()["url"]

        self.layout_builder = layout if layout is not None else layout_module.Bootstrap()
        self.models = list(models) if models is not None else list(AVAILABLE_MODELS)

        if "external_stylesheets" not in kwargs:
            kwargs["external_stylesheets"] = []
        kwargs["external_stylesheets"].extend(
            self.layout_builder.get_external_stylesheets()
        )
        super().__init__(**kwargs)

        self.auth = auth if auth is not None else auth_module.Session()
        self.store = store if store is not None else store_module.Http(self.auth)
        self.llms = dict(llms) if llms is not None else self._default_llms(llm_module)
        if titles is not None:
            self.titles = titles
        else:
            try:
                self.titles = titles_module.OpenAI()
            except ImportError:
                self.titles = titles_module.FirstMessage()
        self.url = url if url is not None else url_module.PathBased()

        self.loop = BackgroundLoop()
        self.navigator = Navigator(
            auth=self.auth,
            store=self.store,
            llms=self.llms,
            titles=self.titles,
            url=self.url,
            models=self.models,
        )

        self.layout = self.layout_builder.build_layout(self.models)
        self._validate_layout()
        self._register_callbacks()

    def _default_llms(self, llm_module) -> Dict[ProviderType, "llm.LLM"]:
        llms: Dict[ProviderType, "llm.LLM"] = {
            ProviderType.CUSTOM_AGENT: llm_module.Backend(self.store)
        }
        try:
            llms[ProviderType.DIRECT] = llm_module.OpenAI()
            llms[ProviderType.STATEFUL_ASSISTANT] = llm_module.OpenAIAssistant()
        except ImportError:
            import warnings

            warnings.warn(
                "Polychat is running with the Echo model because the 'openai' package is not installed. "
                "Assistant models are unavailable. Install it with: pip install openai",
                UserWarning,
            )
            llms[ProviderType.DIRECT] = llm_module.Echo()
        return llms

    def _validate_layout(self) -> None:
        found = set()
        stack = [self.layout]
        while stack:
            component = stack.pop()
            if isinstance(component, (list, tuple)):
                stack.extend(component)
                continue
            component_id = getattr(component, "id", None)
            if isinstance(component_id, str):
                found.add(component_id)
            children = getattr(component, "children", None)
            if children is not None and not isinstance(children, (str, int, float)):
                stack.append(children)

        missing = layout.REQUIRED_IDS - found
        if missing:
            raise ValueError(
                f"Layout is missing required component IDs: {', '.join(sorted(missing))}"
            )

    def _register_callbacks(self) -> None:
        """Registers all the callbacks that connect the view to the navigator."""
        from .callbacks import register_callbacks

        register_callbacks(self)
